"""
api/routes/v1/mfa.py -- TOTP setup and management for the signed-in user.

Routes (all require auth):
  POST /api/v1/mfa/enable                   -- start setup; returns secret + otpauth URI
  POST /api/v1/mfa/verify-setup             -- confirm with a live code; returns backup codes
  POST /api/v1/mfa/disable                  -- requires password re-verification
  POST /api/v1/mfa/regenerate-backup-codes  -- requires password re-verification
  GET  /api/v1/mfa/status

Secrets and backup codes appear in exactly one response each and are never
logged. Those responses carry Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_limit
from api.models import (
    BackupCodesResponse,
    MessageResponse,
    MfaCodeRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    PasswordConfirmRequest,
)
from auth.dependencies import client_ip, client_user_agent, get_current_user, get_mfa_engine
from auth.mfa import MfaEngine
from auth.models import User

router = APIRouter()


@router.post("/mfa/enable", response_model=MfaSetupResponse)
def enable(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    mfa: MfaEngine = Depends(get_mfa_engine),
) -> MfaSetupResponse:
    """Generate a new secret and put the account in pending setup.

    Calling this again before confirming replaces the pending secret.
    """
    setup = mfa.begin_setup(current_user, ip=client_ip(request), user_agent=client_user_agent(request))
    response.headers["Cache-Control"] = "no-store"
    return MfaSetupResponse.from_setup(setup)


@limiter.limit(login_limit)
@router.post("/mfa/verify-setup", response_model=BackupCodesResponse)
def verify_setup(
    request: Request,
    response: Response,
    body: MfaCodeRequest,
    current_user: User = Depends(get_current_user),
    mfa: MfaEngine = Depends(get_mfa_engine),
) -> BackupCodesResponse:
    codes = mfa.confirm_setup(current_user, body.code, ip=client_ip(request), user_agent=client_user_agent(request))
    response.headers["Cache-Control"] = "no-store"
    return BackupCodesResponse(backup_codes=codes)


@limiter.limit(login_limit)
@router.post("/mfa/disable", response_model=MessageResponse)
def disable(
    request: Request,
    body: PasswordConfirmRequest,
    current_user: User = Depends(get_current_user),
    mfa: MfaEngine = Depends(get_mfa_engine),
) -> MessageResponse:
    mfa.disable(current_user, body.password, ip=client_ip(request), user_agent=client_user_agent(request))
    return MessageResponse(message="MFA has been disabled.")


@limiter.limit(login_limit)
@router.post("/mfa/regenerate-backup-codes", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    request: Request,
    response: Response,
    body: PasswordConfirmRequest,
    current_user: User = Depends(get_current_user),
    mfa: MfaEngine = Depends(get_mfa_engine),
) -> BackupCodesResponse:
    codes = mfa.regenerate_backup_codes(
        current_user, body.password, ip=client_ip(request), user_agent=client_user_agent(request)
    )
    response.headers["Cache-Control"] = "no-store"
    return BackupCodesResponse(backup_codes=codes)


@router.get("/mfa/status", response_model=MfaStatusResponse)
def status(
    current_user: User = Depends(get_current_user),
    mfa: MfaEngine = Depends(get_mfa_engine),
) -> MfaStatusResponse:
    return MfaStatusResponse.from_status(mfa.status(current_user))
