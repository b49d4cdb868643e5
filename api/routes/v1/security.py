"""
api/routes/v1/security.py -- Account security views for the signed-in user.

Routes (all require auth):
  GET /api/v1/security/audit-logs?limit=  -- own audit trail, newest first (max 100)
  GET /api/v1/security/login-activity     -- recent logins, failures, origins
  GET /api/v1/security/sessions           -- active refresh tokens (no hashes)

Read-only. Users only ever see entries attached to their own account.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from api.models import AuditLogEntry, LoginActivityResponse, SessionResponse
from auth.audit import MAX_HISTORY_LIMIT, AuditLog
from auth.dependencies import get_audit_log, get_current_user, get_token_issuer
from auth.models import AuthEventType, User
from auth.tokens import TokenIssuer

router = APIRouter()

_LOGIN_EVENTS = {AuthEventType.LOGIN, AuthEventType.LOGIN_FAILED}
_RECENT_LOGINS = 10


@router.get("/security/audit-logs", response_model=list[AuditLogEntry])
def audit_logs(
    limit: int = Query(default=50, ge=1, le=MAX_HISTORY_LIMIT),
    current_user: User = Depends(get_current_user),
    audit: AuditLog = Depends(get_audit_log),
) -> list[AuditLogEntry]:
    return [AuditLogEntry.from_log(e) for e in audit.user_history(current_user.id, limit)]


@router.get("/security/login-activity", response_model=LoginActivityResponse)
def login_activity(
    current_user: User = Depends(get_current_user),
    audit: AuditLog = Depends(get_audit_log),
) -> LoginActivityResponse:
    history = audit.user_history(current_user.id, MAX_HISTORY_LIMIT)
    logins = [e for e in history if e.event_type in _LOGIN_EVENTS]
    failed = audit.recent_failed_logins(current_user.email, timedelta(hours=24))
    distinct_ips = sorted({e.ip_address for e in logins if e.success and e.ip_address})
    return LoginActivityResponse(
        recent_logins=[AuditLogEntry.from_log(e) for e in logins[:_RECENT_LOGINS]],
        failed_attempts_24h=len(failed),
        distinct_ips=distinct_ips,
        suspicious_activity=audit.has_suspicious_activity(current_user.id),
    )


@router.get("/security/sessions", response_model=list[SessionResponse])
def sessions(
    current_user: User = Depends(get_current_user),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> list[SessionResponse]:
    return [SessionResponse.from_token(t) for t in issuer.active_sessions(current_user.id)]
