"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive only as `Authorization: Bearer <token>`. There is no
cookie or API-key path: refresh tokens are round-tripped explicitly in the
request body and never double as bearer credentials.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Services are built once in the app lifespan and read from app.state here, so
routes never construct stores or issuers themselves.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. It never imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.audit import AuditLog
from auth.errors import TokenInvalid
from auth.mfa import MfaEngine
from auth.models import User
from auth.passwords import PasswordPolicy
from auth.service import AuthService
from auth.tokens import TokenIssuer

_BEARER_PREFIX = "Bearer "


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith(_BEARER_PREFIX):
        return None
    return header[len(_BEARER_PREFIX) :].strip() or None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request from its bearer token.

    Returns the active User on success, None on any failure. Never raises.
    """
    token = bearer_token(request)
    if not token:
        return None
    try:
        user_id = get_token_issuer(request).validate_access(token)
    except TokenInvalid:
        return None
    user = request.app.state.store.get_user_by_id(user_id)
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": TokenInvalid.code, "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def client_user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


def get_mfa_engine(request: Request) -> MfaEngine:
    return request.app.state.mfa_engine


def get_password_policy(request: Request) -> PasswordPolicy:
    return request.app.state.password_policy


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit_log
