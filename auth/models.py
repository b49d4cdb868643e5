"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Dataclasses own domain shape;
the store and the services do the work. The only logic here is derived,
read-only state (RefreshToken.state) that must be computed identically
everywhere it is consulted.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AuthEventType(str, Enum):
    """Closed set of audit event kinds.

    Values are the wire/storage names. Adding a kind is a reviewed schema
    change; callers cannot invent event types at runtime.
    """

    LOGIN = "Login"
    LOGIN_FAILED = "LoginFailed"
    LOGOUT = "Logout"
    REGISTER = "Register"
    REGISTER_FAILED = "RegisterFailed"
    PASSWORD_CHANGED = "PasswordChanged"
    PASSWORD_CHANGE_FAILED = "PasswordChangeFailed"
    MFA_SETUP_STARTED = "MfaSetupStarted"
    MFA_ENABLED = "MfaEnabled"
    MFA_DISABLED = "MfaDisabled"
    MFA_VERIFIED = "MfaVerified"
    MFA_FAILED = "MfaFailed"
    MFA_CHALLENGE_ISSUED = "MfaChallengeIssued"
    BACKUP_CODES_REGENERATED = "BackupCodesRegenerated"
    TOKEN_REFRESH = "TokenRefresh"
    TOKEN_REFRESH_FAILED = "TokenRefreshFailed"
    TOKEN_REUSE_DETECTED = "TokenReuseDetected"
    ACCOUNT_LOCKED = "AccountLocked"
    SUSPICIOUS_ACTIVITY = "SuspiciousActivity"


class TokenState(str, Enum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class MfaState(str, Enum):
    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


@dataclass
class User:
    """An account as seen by the auth core.

    mfa_secret is present from begin_setup onward; mfa_enabled and
    mfa_setup_completed flip together when the setup is confirmed.
    mfa_backup_codes holds bcrypt hashes only -- plaintext codes are shown
    once at generation time and never stored.
    """

    email: str
    name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    mfa_setup_completed: bool = False
    mfa_backup_codes: list[str] = field(default_factory=list)
    last_password_change: datetime | None = None
    failed_login_attempts: int = 0
    lockout_end_time: datetime | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None

    @property
    def mfa_state(self) -> MfaState:
        if self.mfa_enabled and self.mfa_setup_completed:
            return MfaState.ENABLED
        if self.mfa_secret:
            return MfaState.PENDING_SETUP
        return MfaState.DISABLED


@dataclass
class RefreshToken:
    """One link in a refresh-token family.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value exists
    only in the TokenPair returned at issue time.

    replaced_by_token_id points forward to the successor created by rotation.
    Revocation is permanent: revoked_at is written once and never cleared.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    replaced_by_token_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def state(self, now: datetime) -> TokenState:
        # Expiry is evaluated lazily against the caller's clock.
        if self.revoked_at is not None:
            return TokenState.ROTATED if self.replaced_by_token_id is not None else TokenState.REVOKED
        if now >= self.expires_at:
            return TokenState.EXPIRED
        return TokenState.ACTIVE


@dataclass
class GeoLocation:
    country: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass
class AuthAuditLog:
    """Append-only forensic record. Never updated; deleted only by retention."""

    event_type: AuthEventType
    success: bool
    id: int | None = None
    user_id: int | None = None
    email: str | None = None
    failure_reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    location: GeoLocation | None = None
    created_at: datetime | None = None


@dataclass
class TokenPair:
    """Returned once by TokenIssuer.issue / refresh. refresh_token is the raw secret."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class MfaSetup:
    secret: str
    provisioning_uri: str
    manual_entry_key: str


@dataclass
class MfaStatus:
    state: MfaState
    backup_codes_remaining: int = 0

    @property
    def enabled(self) -> bool:
        return self.state is MfaState.ENABLED


@dataclass
class PasswordCheck:
    ok: bool
    violations: list[str] = field(default_factory=list)


@dataclass
class LoginResult:
    """Outcome of a password login.

    Exactly one of tokens / mfa_token is set: MFA-enabled users receive a
    short-lived challenge token and must complete verify-mfa to get tokens.
    """

    user: User
    tokens: TokenPair | None = None
    mfa_token: str | None = None
    password_expired: bool = False
    suspicious_activity: bool = False

    @property
    def requires_mfa(self) -> bool:
        return self.mfa_token is not None
