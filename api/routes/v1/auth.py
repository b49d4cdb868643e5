"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register           -- create account; returns token pair
  POST /api/v1/auth/login              -- password login; tokens or MFA challenge
  POST /api/v1/auth/verify-mfa         -- second step for MFA accounts
  POST /api/v1/auth/refresh            -- rotate refresh token
  POST /api/v1/auth/logout             -- revoke one refresh token (idempotent)
  POST /api/v1/auth/logout-all         -- revoke every session (requires auth)
  GET  /api/v1/auth/me                 -- current user info (requires auth)
  PUT  /api/v1/auth/password           -- change password (requires auth)
  POST /api/v1/auth/password/validate  -- dry-run the password policy
  GET  /api/v1/auth/password/generate  -- policy-compliant random password

Security:
  Credential-bearing endpoints are rate-limited per IP (api.limiter).
  Cache-Control: no-store on every response that carries a token.
  Domain failures raise AuthError subclasses; api/main.py maps them to a
  status code and the standard error envelope, so handlers stay linear.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_limit, refresh_limit
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    GeneratedPasswordResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordValidateRequest,
    PasswordValidationResponse,
    RefreshRequest,
    RegisterRequest,
    SessionsRevokedResponse,
    TokenResponse,
    UserResponse,
    VerifyMfaLoginRequest,
)
from auth.dependencies import (
    client_ip,
    client_user_agent,
    get_auth_service,
    get_current_user,
    get_password_policy,
    get_token_issuer,
    try_get_current_user,
)
from auth.models import LoginResult, User
from auth.passwords import PasswordPolicy
from auth.service import AuthService
from auth.tokens import TokenIssuer

# Auth policy:
# - register, login, verify-mfa, refresh, logout:  public (the credential is in the body)
# - password/validate, password/generate:          public; validate uses the user if authenticated
# - me, logout-all, PUT password:                  requires auth (get_current_user)
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse.from_pair(result.tokens) if result.tokens else None,
        requires_mfa=result.requires_mfa,
        mfa_token=result.mfa_token,
        password_expired=result.password_expired,
        suspicious_activity=result.suspicious_activity,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account and sign it in.

    The password is checked against the full policy, including fragments of
    the submitted name and email. Every failing rule is returned at once.
    """
    user, tokens = service.register(
        body.email, body.name, body.password, ip=client_ip(request), user_agent=client_user_agent(request)
    )
    _no_store(response)
    return _auth_response(LoginResult(user=user, tokens=tokens))


@limiter.limit(login_limit)
@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same "bad_credentials"
    error. MFA accounts get requires_mfa=true and a short-lived mfa_token
    instead of tokens.
    """
    result = service.login(body.email, body.password, ip=client_ip(request), user_agent=client_user_agent(request))
    _no_store(response)
    return _auth_response(result)


@limiter.limit(login_limit)
@router.post("/auth/verify-mfa", response_model=AuthResponse)
def verify_mfa(
    request: Request,
    response: Response,
    body: VerifyMfaLoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    result = service.complete_mfa_login(
        body.mfa_token,
        code=body.code,
        backup_code=body.backup_code,
        ip=client_ip(request),
        user_agent=client_user_agent(request),
    )
    _no_store(response)
    return _auth_response(result)


@limiter.limit(refresh_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> TokenResponse:
    """Exchange a refresh token for a new pair.

    Every failure (unknown, expired, reused, inactive user) returns the same
    401 "refresh_failed". Presenting an already-rotated token also revokes
    every session of its owner.
    """
    pair = issuer.refresh(body.refresh_token, ip=client_ip(request), user_agent=client_user_agent(request))
    _no_store(response)
    return TokenResponse.from_pair(pair)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the given refresh token. Always 200, whether or not it existed."""
    service.logout(
        body.refresh_token,
        user=try_get_current_user(request),
        ip=client_ip(request),
        user_agent=client_user_agent(request),
    )
    return MessageResponse(message="Logged out.")


@router.post("/auth/password/validate", response_model=PasswordValidationResponse)
def validate_password(
    request: Request,
    body: PasswordValidateRequest,
    policy: PasswordPolicy = Depends(get_password_policy),
) -> PasswordValidationResponse:
    check = policy.validate(body.password, try_get_current_user(request))
    return PasswordValidationResponse(valid=check.ok, violations=check.violations)


@router.get("/auth/password/generate", response_model=GeneratedPasswordResponse)
def generate_password(
    response: Response,
    policy: PasswordPolicy = Depends(get_password_policy),
) -> GeneratedPasswordResponse:
    _no_store(response)
    return GeneratedPasswordResponse(password=policy.generate_secure())


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.post("/auth/logout-all", response_model=SessionsRevokedResponse)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> SessionsRevokedResponse:
    revoked = service.logout_everywhere(current_user, ip=client_ip(request), user_agent=client_user_agent(request))
    return SessionsRevokedResponse(message="Logged out of all sessions.", sessions_revoked=revoked)


@router.put("/auth/password", response_model=SessionsRevokedResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> SessionsRevokedResponse:
    """Change the password. All refresh tokens are revoked; sign in again."""
    revoked = service.change_password(
        current_user,
        body.current_password,
        body.new_password,
        ip=client_ip(request),
        user_agent=client_user_agent(request),
    )
    return SessionsRevokedResponse(message="Password changed successfully.", sessions_revoked=revoked)
