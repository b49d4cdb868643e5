"""
auth/service.py -- Orchestration of the login, registration and password flows.

AuthService is the single entry point the HTTP layer calls for anything that
touches a credential. It composes the four components:

  password check (PasswordPolicy) -> token issuance (TokenIssuer)
  -> MFA deferral (MfaEngine) when the account has MFA enabled

and records exactly one audit entry per security-relevant outcome.

Timing equalization: login() always runs one bcrypt verification, against the
policy's dummy hash when the email is unknown, so response time does not
reveal whether an account exists.

Lockout: repeated MFA failures (max_failed_mfa_attempts) lock the account for
lockout_minutes. A correct password during an expired lockout resets the
counter.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NoReturn

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.errors import (
    AccountDisabled,
    AccountLocked,
    EmailAlreadyRegistered,
    InvalidCredential,
    MfaChallengeInvalid,
    MfaInvalidCode,
    PolicyViolation,
    WrongPassword,
)
from auth.mfa import MfaEngine
from auth.models import AuthEventType, LoginResult, MfaState, TokenPair, User
from auth.passwords import PasswordPolicy
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.config import Settings

logger = logging.getLogger("taskflow.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Usage:
    service = AuthService(store, policy, issuer, mfa, audit, settings)
    result = service.login("a@x.com", "S3cure!pass", ip="1.2.3.4")
    if result.requires_mfa:
        result = service.complete_mfa_login(result.mfa_token, code="123456")
    """

    def __init__(
        self,
        store: CredentialStore,
        policy: PasswordPolicy,
        tokens: TokenIssuer,
        mfa: MfaEngine,
        audit: AuditLog,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._policy = policy
        self._tokens = tokens
        self._mfa = mfa
        self._audit = audit
        self._history_count = settings.password_policy.password_history_count
        self._max_mfa_failures = settings.max_failed_mfa_attempts
        self._lockout = timedelta(minutes=settings.lockout_minutes)
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        name: str,
        password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[User, TokenPair]:
        email = normalize_email(email)
        name = (name or "").strip()

        check = self._policy.validate(password, User(email=email, name=name))
        if not check.ok:
            self._audit.record(
                AuthEventType.REGISTER_FAILED,
                False,
                email=email,
                failure_reason="Password policy violation",
                ip=ip,
                user_agent=user_agent,
                metadata={"violations": len(check.violations)},
            )
            raise PolicyViolation(check.violations)

        if self._store.get_user_by_email(email) is not None:
            self._register_conflict(email, ip, user_agent)

        now = self._clock()
        hashed = self._policy.hash(password)
        user = User(email=email, name=name, hashed_password=hashed, last_password_change=now, created_at=now)
        try:
            user.id = self._store.create_user(user)
        except IntegrityError:
            self._register_conflict(email, ip, user_agent)
        self._store.add_password_history(user.id, hashed, now)

        tokens = self._tokens.issue(user, ip, user_agent)
        self._audit.record(
            AuthEventType.REGISTER, True, user_id=user.id, email=email, ip=ip, user_agent=user_agent
        )
        logger.info("Registered user %s", user.id)
        return user, tokens

    def _register_conflict(self, email: str, ip: str | None, user_agent: str | None) -> NoReturn:
        self._audit.record(
            AuthEventType.REGISTER_FAILED,
            False,
            email=email,
            failure_reason="Email already registered",
            ip=ip,
            user_agent=user_agent,
        )
        raise EmailAlreadyRegistered()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ip: str | None = None, user_agent: str | None = None) -> LoginResult:
        email = normalize_email(email)
        user = self._store.get_user_by_email(email)

        if user is None or not user.hashed_password:
            self._policy.verify(password, self._policy.dummy_hash)
            self._login_failed(email, None, "Invalid email or password", ip, user_agent)
            raise InvalidCredential()
        if not self._policy.verify(password, user.hashed_password):
            self._login_failed(email, user.id, "Invalid email or password", ip, user_agent)
            raise InvalidCredential()
        if not user.is_active:
            self._login_failed(email, user.id, "Account is disabled", ip, user_agent)
            raise AccountDisabled()

        now = self._clock()
        minutes = self._lockout_remaining(user, now)
        if minutes:
            self._login_failed(email, user.id, "Account is locked", ip, user_agent)
            raise AccountLocked(minutes)
        if user.failed_login_attempts > 0:
            self._reset_failures(user)

        password_expired = self._policy.is_expired(user, now)

        if user.mfa_state is MfaState.ENABLED:
            challenge = self._tokens.issue_mfa_challenge(user)
            self._audit.record(
                AuthEventType.MFA_CHALLENGE_ISSUED, True, user_id=user.id, email=email, ip=ip, user_agent=user_agent
            )
            return LoginResult(
                user=user,
                mfa_token=challenge,
                password_expired=password_expired,
                suspicious_activity=self._audit.has_suspicious_activity(user.id),
            )

        tokens = self._finish_login(user, "password", ip, user_agent)
        return LoginResult(
            user=user,
            tokens=tokens,
            password_expired=password_expired,
            suspicious_activity=self._audit.has_suspicious_activity(user.id),
        )

    def complete_mfa_login(
        self,
        challenge: str,
        code: str | None = None,
        backup_code: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        user_id = self._tokens.validate_mfa_challenge(challenge)
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise MfaChallengeInvalid()
        if not user.is_active:
            raise AccountDisabled()

        now = self._clock()
        minutes = self._lockout_remaining(user, now)
        if minutes:
            raise AccountLocked(minutes)

        try:
            self._mfa.verify_login(user, code=code, backup_code=backup_code, ip=ip, user_agent=user_agent)
        except MfaInvalidCode:
            self._register_mfa_failure(user, now, ip, user_agent)
            raise

        if user.failed_login_attempts > 0:
            self._reset_failures(user)
        tokens = self._finish_login(user, "mfa", ip, user_agent)
        return LoginResult(
            user=user,
            tokens=tokens,
            password_expired=self._policy.is_expired(user, now),
            suspicious_activity=self._audit.has_suspicious_activity(user.id),
        )

    def _finish_login(self, user: User, method: str, ip: str | None, user_agent: str | None) -> TokenPair:
        tokens = self._tokens.issue(user, ip, user_agent)
        user.last_login = self._clock()
        self._store.update_user(user.id, last_login=user.last_login)
        self._audit.record(
            AuthEventType.LOGIN,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"method": method},
        )
        return tokens

    def _login_failed(
        self, email: str, user_id: int | None, reason: str, ip: str | None, user_agent: str | None
    ) -> None:
        logger.info("Login failed for user %s ip=%s: %s", user_id if user_id is not None else "unknown", ip, reason)
        self._audit.record(
            AuthEventType.LOGIN_FAILED,
            False,
            user_id=user_id,
            email=email,
            failure_reason=reason,
            ip=ip,
            user_agent=user_agent,
        )

    def _lockout_remaining(self, user: User, now: datetime) -> int:
        """Whole minutes (rounded up) until the lockout ends, 0 if not locked."""
        if user.lockout_end_time is None or user.lockout_end_time <= now:
            return 0
        return max(1, math.ceil((user.lockout_end_time - now).total_seconds() / 60))

    def _register_mfa_failure(self, user: User, now: datetime, ip: str | None, user_agent: str | None) -> None:
        attempts = self._store.increment_failed_attempts(user.id)
        user.failed_login_attempts = attempts
        if attempts < self._max_mfa_failures:
            return
        user.lockout_end_time = now + self._lockout
        self._store.update_user(user.id, lockout_end_time=user.lockout_end_time)
        logger.warning("User %s locked out after %d failed MFA attempts", user.id, attempts)
        self._audit.record(
            AuthEventType.ACCOUNT_LOCKED,
            False,
            user_id=user.id,
            email=user.email,
            failure_reason="Too many failed MFA attempts",
            ip=ip,
            user_agent=user_agent,
            metadata={"failed_attempts": attempts, "lockout_until": user.lockout_end_time.isoformat()},
        )

    def _reset_failures(self, user: User) -> None:
        self._store.update_user(user.id, failed_login_attempts=0, lockout_end_time=None)
        user.failed_login_attempts, user.lockout_end_time = 0, None

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Replace the user's password and revoke every refresh token.

        Returns the number of sessions revoked.
        """
        if not self._policy.verify(current_password, user.hashed_password):
            self._password_change_failed(user, "Invalid current password", ip, user_agent)
            raise WrongPassword()

        violations = list(self._policy.validate(new_password, user).violations)
        if self._history_count > 0:
            history = self._store.get_password_history(user.id, self._history_count)
            if self._policy.is_in_history(new_password, history):
                violations.append(f"Password cannot be one of your last {self._history_count} passwords")
        if violations:
            self._password_change_failed(user, "Password policy violation", ip, user_agent)
            raise PolicyViolation(violations)

        now = self._clock()
        hashed = self._policy.hash(new_password)
        self._store.update_user(user.id, hashed_password=hashed, last_password_change=now)
        self._store.add_password_history(user.id, hashed, now)
        user.hashed_password, user.last_password_change = hashed, now

        revoked = self._tokens.revoke_all_for_user(user.id)
        self._audit.record(
            AuthEventType.PASSWORD_CHANGED,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        logger.info("Password changed for user %s", user.id)
        return revoked

    def _password_change_failed(self, user: User, reason: str, ip: str | None, user_agent: str | None) -> None:
        self._audit.record(
            AuthEventType.PASSWORD_CHANGE_FAILED,
            False,
            user_id=user.id,
            email=user.email,
            failure_reason=reason,
            ip=ip,
            user_agent=user_agent,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(
        self,
        refresh_token: str,
        user: User | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Revoke one refresh token. Idempotent; unknown tokens are not an error.

        When `user` is given, a token belonging to someone else is left alone.
        """
        link = self._tokens.lookup(refresh_token)
        if link is None or (user is not None and link.user_id != user.id):
            return False
        revoked = self._tokens.revoke(refresh_token)
        owner = user or self._store.get_user_by_id(link.user_id)
        self._audit.record(
            AuthEventType.LOGOUT,
            True,
            user_id=link.user_id,
            email=owner.email if owner else None,
            ip=ip,
            user_agent=user_agent,
            metadata={"scope": "session", "token_id": link.id},
        )
        return revoked

    def logout_everywhere(self, user: User, ip: str | None = None, user_agent: str | None = None) -> int:
        revoked = self._tokens.revoke_all_for_user(user.id)
        self._audit.record(
            AuthEventType.LOGOUT,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"scope": "all", "sessions_revoked": revoked},
        )
        return revoked


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class AuthComponents:
    """Every auth component built over one store, as the app lifespan and CLI use them."""

    store: CredentialStore
    policy: PasswordPolicy
    audit: AuditLog
    tokens: TokenIssuer
    mfa: MfaEngine
    service: AuthService

    def run_retention(self, audit_retention_days: int) -> tuple[int, int]:
        """Maintenance sweep. Returns (refresh tokens purged, audit entries purged)."""
        tokens = self.tokens.purge_expired()
        entries = self.audit.purge_older_than(audit_retention_days)
        logger.info("Retention sweep removed %d refresh tokens and %d audit entries", tokens, entries)
        return tokens, entries

    def close(self) -> None:
        self.store.close()


def build_components(
    settings: Settings,
    store: CredentialStore | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AuthComponents:
    """Construct the component graph from one Settings value.

    Pass `store` to reuse an existing CredentialStore (tests share one
    in-memory database this way).
    """
    store = store or CredentialStore(settings.database_url)
    policy = PasswordPolicy(settings.password_policy, rounds=settings.bcrypt_rounds)
    audit = AuditLog(store, settings.anomaly, clock=clock)
    tokens = TokenIssuer(store, audit, settings, clock=clock)
    mfa = MfaEngine(
        store,
        policy,
        audit,
        issuer=settings.mfa_issuer,
        backup_code_count=settings.mfa_backup_code_count,
        clock=clock,
    )
    service = AuthService(store, policy, tokens, mfa, audit, settings, clock=clock)
    return AuthComponents(store=store, policy=policy, audit=audit, tokens=tokens, mfa=mfa, service=service)
