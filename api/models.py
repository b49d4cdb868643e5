"""
API request and response models for the TaskFlow auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two
through the from_* factory classmethods colocated with each response model.

Nothing secret-bearing leaves through these models except where a flow hands
a credential to its owner exactly once (TokenResponse, BackupCodesResponse,
MfaSetupResponse). Refresh token hashes and backup code hashes never do.
"""

from datetime import datetime
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import AuthAuditLog, MfaSetup, MfaStatus, RefreshToken, TokenPair, User

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Identity fields are trimmed; password fields never are, so the same
# password hashes and verifies identically on every endpoint.
TrimmedStr = Annotated[str, StringConstraints(strip_whitespace=True)]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: TrimmedStr = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    name: TrimmedStr = Field(min_length=1, max_length=100)
    # max_length keeps bcrypt input bounded.
    password: str = Field(min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: TrimmedStr = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class VerifyMfaLoginRequest(BaseModel):
    """Second login step. backup_code wins when both are sent."""

    mfa_token: str = Field(min_length=1)
    code: Optional[str] = Field(default=None, max_length=16)
    backup_code: Optional[str] = Field(default=None, max_length=32)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordValidateRequest(BaseModel):
    password: str = Field(max_length=255)


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class PasswordConfirmRequest(BaseModel):
    """Password re-verification gate for MFA disable / backup code regeneration."""

    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    mfa_enabled: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_password_change: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            mfa_enabled=user.mfa_enabled and user.mfa_setup_completed,
            created_at=user.created_at,
            last_login=user.last_login,
            last_password_change=user.last_password_change,
        )


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        now = datetime.now(pair.access_expires_at.tzinfo)
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=max(0, int((pair.access_expires_at - now).total_seconds())),
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    """Response for register / login / verify-mfa.

    When requires_mfa is true, tokens is null and mfa_token must be sent to
    POST /auth/verify-mfa together with a TOTP or backup code.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tokens: Optional[TokenResponse] = None
    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    password_expired: bool = False
    suspicious_activity: bool = False


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SessionsRevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


class PasswordValidationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    violations: list[str]


class GeneratedPasswordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    password: str


class MfaSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    manual_entry_key: str

    @classmethod
    def from_setup(cls, setup: MfaSetup) -> "MfaSetupResponse":
        return cls(secret=setup.secret, provisioning_uri=setup.provisioning_uri, manual_entry_key=setup.manual_entry_key)


class BackupCodesResponse(BaseModel):
    """Plaintext backup codes. Shown once; the server keeps only hashes."""

    model_config = ConfigDict(frozen=True)

    backup_codes: list[str]
    enabled: bool = True


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: str
    enabled: bool
    backup_codes_remaining: int

    @classmethod
    def from_status(cls, status: MfaStatus) -> "MfaStatusResponse":
        return cls(
            state=status.state.value,
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
        )


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event_type: str
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_log(cls, entry: AuthAuditLog) -> "AuditLogEntry":
        return cls(
            id=entry.id,
            event_type=entry.event_type.value,
            success=entry.success,
            failure_reason=entry.failure_reason,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            country=entry.location.country if entry.location else None,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


class LoginActivityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    recent_logins: list[AuditLogEntry]
    failed_attempts_24h: int
    distinct_ips: list[str]
    suspicious_activity: bool


class SessionResponse(BaseModel):
    """One active refresh token, without its hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    created_at: Optional[datetime] = None
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_token(cls, token: RefreshToken) -> "SessionResponse":
        return cls(
            id=token.id,
            created_at=token.created_at,
            expires_at=token.expires_at,
            ip_address=token.ip_address,
            user_agent=token.user_agent,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    detail carries the full violation list for password policy failures.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, list[str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
