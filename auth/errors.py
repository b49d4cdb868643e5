"""
auth/errors.py -- Failure taxonomy for the auth core.

Every failure carries a stable machine-readable `code` and a user-facing
`message`. The API layer maps each class to an HTTP status and renders the
standard error envelope; nothing here knows about HTTP.

Enumeration and oracle resistance:
  InvalidCredential covers unknown email and wrong password alike.
  TokenInvalid covers bad signature, wrong issuer/audience and expiry alike.
  RefreshFailed records *why* in `kind` for logs and the audit trail, but its
  message and code are identical for every kind.
"""

from __future__ import annotations

from enum import Enum


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredential(AuthError):
    code = "bad_credentials"
    message = "Invalid email or password."


class AccountDisabled(AuthError):
    code = "account_disabled"
    message = "Account is disabled."


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is temporarily locked. Try again later."

    def __init__(self, retry_after_minutes: int | None = None) -> None:
        self.retry_after_minutes = retry_after_minutes
        if retry_after_minutes is not None:
            super().__init__(f"Account is locked. Try again in {retry_after_minutes} minutes.")
        else:
            super().__init__()


class TokenInvalid(AuthError):
    code = "unauthorized"
    message = "Invalid or expired token."


class RefreshFailureKind(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REUSED = "reused"
    USER_INACTIVE = "user_inactive"


class RefreshFailed(AuthError):
    code = "refresh_failed"
    message = "Refresh failed, please re-authenticate."

    def __init__(self, kind: RefreshFailureKind) -> None:
        self.kind = kind
        super().__init__()


class MfaInvalidCode(AuthError):
    code = "mfa_invalid_code"
    message = "Invalid verification code."


class MfaAlreadyEnabled(AuthError):
    code = "mfa_already_enabled"
    message = "MFA is already enabled for this account."


class MfaNotEnabled(AuthError):
    code = "mfa_not_enabled"
    message = "MFA is not enabled for this account."


class MfaNoPendingSetup(AuthError):
    code = "mfa_no_pending_setup"
    message = "MFA setup not initiated."


class MfaChallengeInvalid(AuthError):
    code = "mfa_challenge_invalid"
    message = "Invalid or expired MFA token."


class WrongPassword(AuthError):
    code = "wrong_password"
    message = "Invalid password."


class EmailAlreadyRegistered(AuthError):
    code = "conflict"
    message = "User with this email already exists."


class PolicyViolation(AuthError):
    """One or more password rules failed. All of them are listed."""

    code = "password_policy"
    message = "Password does not meet the password policy."

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__()
