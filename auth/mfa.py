"""
auth/mfa.py -- MFA Engine: TOTP provisioning/verification and backup codes.

States per user: disabled -> pending_setup (secret stored, not confirmed)
-> enabled (confirmed, backup codes issued). enabled -> disabled only through
disable() with password re-verification.

TOTP: pyotp with the RFC 6238 defaults (SHA1, 6 digits, 30 s step) and a
tolerance of one step either side of "now". The clock is injectable so tests
can pin the time step.

Backup codes: 8-digit numeric strings from `secrets`, stored bcrypt-hashed
through the password policy's hasher. Plaintext codes are returned exactly
once. Consumption is a compare-and-set on the stored hash list, so the same
code verified twice concurrently succeeds once.

Secrets, codes and backup codes are never logged.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from datetime import datetime, timezone

import pyotp

from auth.audit import AuditLog
from auth.errors import MfaAlreadyEnabled, MfaInvalidCode, MfaNoPendingSetup, MfaNotEnabled, WrongPassword
from auth.models import AuthEventType, MfaSetup, MfaState, MfaStatus, User
from auth.passwords import PasswordPolicy
from auth.store import CredentialStore

logger = logging.getLogger("taskflow.mfa")

BACKUP_CODE_DIGITS = 8
TOTP_VALID_WINDOW = 1
_CONSUME_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def provisioning_uri(issuer: str, email: str, secret: str) -> str:
    """otpauth URI in the exact form authenticator apps expect from TaskFlow.

    Built by hand: pyotp's provisioning_uri() percent-encodes the label and
    would not match this format byte for byte.
    """
    return f"otpauth://totp/{issuer}:{email}?secret={secret}&issuer={issuer}"


def format_manual_entry_key(secret: str) -> str:
    """Group a base32 secret in blocks of four: 'JBSW Y3DP EHPK 3PXP'."""
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def _normalize(code: str | None) -> str:
    return "".join(ch for ch in (code or "") if ch not in " -")


class MfaEngine:
    """Per-user TOTP state machine.

    Usage:
        mfa = MfaEngine(store, policy, audit, issuer=settings.mfa_issuer)
        setup = mfa.begin_setup(user)
        codes = mfa.confirm_setup(user, "123456")
        mfa.verify_login(user, code="654321")
    """

    def __init__(
        self,
        store: CredentialStore,
        policy: PasswordPolicy,
        audit: AuditLog,
        issuer: str = "TaskFlow",
        backup_code_count: int = 8,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._policy = policy
        self._audit = audit
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self._clock = clock

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def begin_setup(self, user: User, ip: str | None = None, user_agent: str | None = None) -> MfaSetup:
        if user.mfa_state is MfaState.ENABLED:
            raise MfaAlreadyEnabled()

        secret = pyotp.random_base32()  # 32 chars = 160 bits
        self._store.update_user(user.id, mfa_secret=secret, mfa_enabled=False, mfa_setup_completed=False)
        user.mfa_secret, user.mfa_enabled, user.mfa_setup_completed = secret, False, False

        self._audit.record(
            AuthEventType.MFA_SETUP_STARTED, True, user_id=user.id, email=user.email, ip=ip, user_agent=user_agent
        )
        logger.info("MFA setup started for user %s", user.id)
        return MfaSetup(
            secret=secret,
            provisioning_uri=provisioning_uri(self.issuer, user.email, secret),
            manual_entry_key=format_manual_entry_key(secret),
        )

    def confirm_setup(
        self, user: User, code: str, ip: str | None = None, user_agent: str | None = None
    ) -> list[str]:
        """Confirm the pending secret with a live code. Returns the plaintext backup codes."""
        if user.mfa_state is MfaState.ENABLED:
            raise MfaAlreadyEnabled()
        if not user.mfa_secret:
            raise MfaNoPendingSetup()

        if not self._verify_totp(user.mfa_secret, code):
            self._audit.record(
                AuthEventType.MFA_FAILED,
                False,
                user_id=user.id,
                email=user.email,
                failure_reason="Invalid verification code",
                ip=ip,
                user_agent=user_agent,
                metadata={"stage": "setup"},
            )
            raise MfaInvalidCode()

        codes, hashes = self._new_backup_codes()
        self._store.update_user(user.id, mfa_enabled=True, mfa_setup_completed=True, mfa_backup_codes=hashes)
        user.mfa_enabled, user.mfa_setup_completed, user.mfa_backup_codes = True, True, hashes

        self._audit.record(
            AuthEventType.MFA_ENABLED, True, user_id=user.id, email=user.email, ip=ip, user_agent=user_agent
        )
        logger.info("MFA enabled for user %s", user.id)
        return codes

    # ------------------------------------------------------------------
    # Login verification
    # ------------------------------------------------------------------

    def verify_login(
        self,
        user: User,
        code: str | None = None,
        backup_code: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Accept an unused backup code or a TOTP code. Raises MfaInvalidCode.

        A non-empty backup_code takes precedence over code.
        """
        if user.mfa_state is not MfaState.ENABLED:
            raise MfaNotEnabled()

        method = "backup_code" if backup_code else "totp"
        if backup_code:
            ok = self._consume_backup_code(user, backup_code)
        else:
            ok = self._verify_totp(user.mfa_secret, code)

        if not ok:
            self._audit.record(
                AuthEventType.MFA_FAILED,
                False,
                user_id=user.id,
                email=user.email,
                failure_reason="Invalid verification code",
                ip=ip,
                user_agent=user_agent,
                metadata={"method": method},
            )
            raise MfaInvalidCode()

        metadata: dict = {"method": method}
        if method == "backup_code":
            metadata["backup_codes_remaining"] = len(user.mfa_backup_codes)
        self._audit.record(
            AuthEventType.MFA_VERIFIED,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata=metadata,
        )

    def _verify_totp(self, secret: str | None, code: str | None) -> bool:
        code = _normalize(code)
        if not secret or not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=self._clock(), valid_window=TOTP_VALID_WINDOW)

    def _consume_backup_code(self, user: User, backup_code: str | None) -> bool:
        candidate = _normalize(backup_code)
        if not candidate:
            return False

        hashes = list(user.mfa_backup_codes)
        for _ in range(_CONSUME_RETRIES):
            match = next((i for i, h in enumerate(hashes) if self._policy.verify(candidate, h)), None)
            if match is None:
                return False
            remaining = hashes[:match] + hashes[match + 1 :]
            if self._store.replace_backup_codes(user.id, hashes, remaining):
                user.mfa_backup_codes = remaining
                logger.info("Backup code used by user %s; %d left", user.id, len(remaining))
                return True
            # Another request changed the list first; re-read and try again.
            fresh = self._store.get_user_by_id(user.id)
            hashes = list(fresh.mfa_backup_codes) if fresh else []
        logger.warning("Backup code consumption for user %s kept losing races", user.id)
        return False

    # ------------------------------------------------------------------
    # Disable / regenerate
    # ------------------------------------------------------------------

    def disable(self, user: User, password: str, ip: str | None = None, user_agent: str | None = None) -> None:
        self._require_enabled_and_password(user, password)
        self._store.update_user(
            user.id, mfa_enabled=False, mfa_setup_completed=False, mfa_secret=None, mfa_backup_codes=[]
        )
        user.mfa_enabled, user.mfa_setup_completed, user.mfa_secret, user.mfa_backup_codes = False, False, None, []

        self._audit.record(
            AuthEventType.MFA_DISABLED, True, user_id=user.id, email=user.email, ip=ip, user_agent=user_agent
        )
        logger.info("MFA disabled for user %s", user.id)

    def regenerate_backup_codes(
        self, user: User, password: str, ip: str | None = None, user_agent: str | None = None
    ) -> list[str]:
        self._require_enabled_and_password(user, password)
        codes, hashes = self._new_backup_codes()
        self._store.update_user(user.id, mfa_backup_codes=hashes)
        user.mfa_backup_codes = hashes

        self._audit.record(
            AuthEventType.BACKUP_CODES_REGENERATED,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
        )
        return codes

    def _require_enabled_and_password(self, user: User, password: str) -> None:
        if not user.mfa_enabled:
            raise MfaNotEnabled()
        if not self._policy.verify(password, user.hashed_password):
            raise WrongPassword()

    def _new_backup_codes(self) -> tuple[list[str], list[str]]:
        codes = [
            "".join(secrets.choice(string.digits) for _ in range(BACKUP_CODE_DIGITS))
            for _ in range(self.backup_code_count)
        ]
        return codes, [self._policy.hash(c) for c in codes]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, user: User) -> MfaStatus:
        state = user.mfa_state
        remaining = len(user.mfa_backup_codes) if state is MfaState.ENABLED else 0
        return MfaStatus(state=state, backup_codes_remaining=remaining)
