"""
tests/test_service.py -- Unit tests for auth.service.AuthService flows.

Covers:
  - register: normalization, policy violations, duplicate email
  - login: unknown email and wrong password are indistinguishable
  - login: disabled accounts, password expiry flag, suspicious flag
  - MFA login: challenge, completion, lockout after repeated failures
  - change_password: history rule, session revocation
  - logout / logout_everywhere and the retention sweep
"""

from __future__ import annotations

import pyotp
import pytest

from auth.errors import (
    AccountDisabled,
    AccountLocked,
    EmailAlreadyRegistered,
    InvalidCredential,
    MfaChallengeInvalid,
    MfaInvalidCode,
    PolicyViolation,
    RefreshFailed,
    WrongPassword,
)
from auth.models import AuthEventType

NEW_PASSWORD = "N3w&Improved!Pass"


def _events(components, event_type, **filters):
    return components.store.list_audit_logs(event_types=[event_type], **filters)


def _wrong_code(secret, clock):
    valid = {pyotp.TOTP(secret).at(clock.now, s) for s in (-1, 0, 1)}
    return next(c for c in ("000000", "111111", "222222") if c not in valid)


@pytest.fixture
def mfa_user(components, user, clock):
    """Registered user with MFA enabled. Returns (user, secret, backup_codes)."""
    setup = components.mfa.begin_setup(user)
    codes = components.mfa.confirm_setup(user, pyotp.TOTP(setup.secret).at(clock.now))
    return user, setup.secret, codes


class TestRegister:
    def test_register_normalizes_and_issues_tokens(self, components, strong_password):
        user, tokens = components.service.register("  Jane.Doe@Example.COM ", " Jane ", strong_password)
        assert user.email == "jane.doe@example.com"
        assert user.name == "Jane"
        assert components.tokens.validate_access(tokens.access_token) == user.id
        assert components.store.get_password_history(user.id, 5) == [user.hashed_password]
        assert len(_events(components, AuthEventType.REGISTER, user_id=user.id)) == 1

    def test_policy_violation_lists_every_rule(self, components):
        with pytest.raises(PolicyViolation) as exc_info:
            components.service.register("jane@example.com", "Jane", "short")
        assert len(exc_info.value.violations) >= 3
        assert components.store.get_user_by_email("jane@example.com") is None
        assert len(_events(components, AuthEventType.REGISTER_FAILED)) == 1

    def test_password_with_name_rejected(self, components):
        with pytest.raises(PolicyViolation) as exc_info:
            components.service.register("jane@example.com", "Jonathan Smith", "Jonathan#2024x")
        assert "Password must not contain your name, email, or other personal information" in exc_info.value.violations

    def test_duplicate_email(self, components, user, strong_password):
        with pytest.raises(EmailAlreadyRegistered):
            components.service.register(user.email.upper(), "Someone", strong_password)
        [failed] = _events(components, AuthEventType.REGISTER_FAILED)
        assert failed.failure_reason == "Email already registered"


class TestLogin:
    def test_success(self, components, user, strong_password, clock):
        result = components.service.login("ALICE@example.com", strong_password, ip="203.0.113.10")
        assert result.requires_mfa is False
        assert components.tokens.validate_access(result.tokens.access_token) == user.id
        assert result.password_expired is False
        assert result.suspicious_activity is False
        assert components.store.get_user_by_id(user.id).last_login == clock.now

        [login] = _events(components, AuthEventType.LOGIN, user_id=user.id)
        assert login.metadata == {"method": "password"}

    def test_unknown_and_wrong_password_are_identical(self, components, user):
        with pytest.raises(InvalidCredential) as unknown:
            components.service.login("nobody@example.com", "whatever")
        with pytest.raises(InvalidCredential) as wrong:
            components.service.login(user.email, "whatever")
        assert (unknown.value.code, unknown.value.message) == (wrong.value.code, wrong.value.message)

        failures = _events(components, AuthEventType.LOGIN_FAILED)
        assert {f.failure_reason for f in failures} == {"Invalid email or password"}

    def test_disabled_account(self, components, user, strong_password):
        components.store.update_user(user.id, is_active=False)
        with pytest.raises(AccountDisabled):
            components.service.login(user.email, strong_password)

    def test_disabled_account_with_wrong_password_is_bad_credentials(self, components, user):
        components.store.update_user(user.id, is_active=False)
        with pytest.raises(InvalidCredential):
            components.service.login(user.email, "wrong")

    def test_password_expired_flag(self, components, user, strong_password, clock):
        clock.advance(days=91)
        result = components.service.login(user.email, strong_password)
        assert result.password_expired is True
        assert result.tokens is not None

    def test_repeated_failures_flag_suspicious(self, components, user, strong_password):
        for _ in range(6):
            with pytest.raises(InvalidCredential):
                components.service.login(user.email, "wrong")
        assert len(_events(components, AuthEventType.SUSPICIOUS_ACTIVITY)) == 1

        result = components.service.login(user.email, strong_password)
        assert result.suspicious_activity is True

    def test_new_origin_beyond_limit_flags_suspicious(self, components, user, strong_password):
        for i in range(5):
            components.service.login(user.email, strong_password, ip=f"203.0.113.{i}")
        assert components.service.login(user.email, strong_password, ip="203.0.113.4").suspicious_activity is False
        assert components.service.login(user.email, strong_password, ip="203.0.113.99").suspicious_activity is True


class TestMfaLogin:
    def test_login_returns_challenge(self, components, mfa_user, strong_password):
        user, _, _ = mfa_user
        result = components.service.login(user.email, strong_password)
        assert result.requires_mfa is True
        assert result.tokens is None
        assert components.tokens.validate_mfa_challenge(result.mfa_token) == user.id
        assert len(_events(components, AuthEventType.MFA_CHALLENGE_ISSUED)) == 1
        assert _events(components, AuthEventType.LOGIN) == []

    def test_password_step_alone_is_not_an_origin(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        for i in range(5):
            components.audit.record(AuthEventType.LOGIN, True, user_id=user.id, email=user.email, ip=f"203.0.113.{i}")

        result = components.service.login(user.email, strong_password, ip="198.51.100.99")
        assert result.requires_mfa is True
        assert result.suspicious_activity is False

        done = components.service.complete_mfa_login(
            result.mfa_token, code=pyotp.TOTP(secret).at(clock.now), ip="198.51.100.99"
        )
        assert done.suspicious_activity is True

    def test_complete_with_totp(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        result = components.service.complete_mfa_login(challenge, code=pyotp.TOTP(secret).at(clock.now))
        assert components.tokens.validate_access(result.tokens.access_token) == user.id

        [login] = _events(components, AuthEventType.LOGIN, user_id=user.id)
        assert login.metadata == {"method": "mfa"}

    def test_complete_with_backup_code(self, components, mfa_user, strong_password):
        user, _, codes = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        result = components.service.complete_mfa_login(challenge, backup_code=codes[0])
        assert result.tokens is not None

    def test_invalid_challenge(self, components, mfa_user):
        with pytest.raises(MfaChallengeInvalid):
            components.service.complete_mfa_login("not-a-token", code="123456")

    def test_challenge_expires(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        clock.advance(minutes=6)
        with pytest.raises(MfaChallengeInvalid):
            components.service.complete_mfa_login(challenge, code=pyotp.TOTP(secret).at(clock.now))

    def test_lockout_after_five_failures(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        wrong = _wrong_code(secret, clock)

        for _ in range(5):
            with pytest.raises(MfaInvalidCode):
                components.service.complete_mfa_login(challenge, code=wrong)

        [locked] = _events(components, AuthEventType.ACCOUNT_LOCKED, user_id=user.id)
        assert locked.metadata["failed_attempts"] == 5

        # Even a correct code is refused while locked.
        with pytest.raises(AccountLocked) as exc_info:
            components.service.complete_mfa_login(challenge, code=pyotp.TOTP(secret).at(clock.now))
        assert exc_info.value.retry_after_minutes == 15

        with pytest.raises(AccountLocked):
            components.service.login(user.email, strong_password)

    def test_lockout_expires_and_resets(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        for _ in range(5):
            with pytest.raises(MfaInvalidCode):
                components.service.complete_mfa_login(challenge, code=_wrong_code(secret, clock))

        clock.advance(minutes=16)
        result = components.service.login(user.email, strong_password)
        assert result.requires_mfa is True
        stored = components.store.get_user_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.lockout_end_time is None

    def test_success_resets_failure_counter(self, components, mfa_user, strong_password, clock):
        user, secret, _ = mfa_user
        challenge = components.service.login(user.email, strong_password).mfa_token
        with pytest.raises(MfaInvalidCode):
            components.service.complete_mfa_login(challenge, code=_wrong_code(secret, clock))
        assert components.store.get_user_by_id(user.id).failed_login_attempts == 1

        components.service.complete_mfa_login(challenge, code=pyotp.TOTP(secret).at(clock.now))
        assert components.store.get_user_by_id(user.id).failed_login_attempts == 0


class TestChangePassword:
    def test_success_revokes_sessions(self, components, user, strong_password):
        session = components.service.login(user.email, strong_password).tokens

        revoked = components.service.change_password(user, strong_password, NEW_PASSWORD)
        # Registration token plus the login above.
        assert revoked == 2
        with pytest.raises(RefreshFailed):
            components.tokens.refresh(session.refresh_token)

        assert components.service.login(user.email, NEW_PASSWORD).tokens is not None
        with pytest.raises(InvalidCredential):
            components.service.login(user.email, strong_password)

        [changed] = _events(components, AuthEventType.PASSWORD_CHANGED, user_id=user.id)
        assert changed.metadata == {"sessions_revoked": 2}

    def test_wrong_current_password(self, components, user):
        with pytest.raises(WrongPassword):
            components.service.change_password(user, "not-it", NEW_PASSWORD)
        assert len(_events(components, AuthEventType.PASSWORD_CHANGE_FAILED)) == 1

    def test_reuse_of_recent_password_rejected(self, components, user, strong_password):
        components.service.change_password(user, strong_password, NEW_PASSWORD)
        with pytest.raises(PolicyViolation) as exc_info:
            components.service.change_password(user, NEW_PASSWORD, strong_password)
        assert exc_info.value.violations == ["Password cannot be one of your last 5 passwords"]

    def test_history_window(self, components, user, strong_password):
        passwords = [strong_password] + [f"R0tating#Secret{i}" for i in range(5)]
        for current, new in zip(passwords, passwords[1:]):
            components.service.change_password(user, current, new)
        # The original password has dropped out of the last five.
        components.service.change_password(user, passwords[-1], strong_password)

    def test_policy_violations_combined_with_history(self, components, user, strong_password):
        with pytest.raises(PolicyViolation) as exc_info:
            components.service.change_password(user, strong_password, "weak")
        assert len(exc_info.value.violations) >= 3


class TestLogout:
    def test_logout_one_session(self, components, user, strong_password):
        first = components.service.login(user.email, strong_password).tokens
        second = components.service.login(user.email, strong_password).tokens

        assert components.service.logout(first.refresh_token) is True
        assert components.service.logout(first.refresh_token) is False
        assert components.tokens.refresh(second.refresh_token) is not None

    def test_logout_unknown_token(self, components):
        assert components.service.logout("never-issued") is False

    def test_logout_ignores_other_users_token(self, components, user, make_user, strong_password):
        other = make_user(email="bob@example.com", name="Bob Example")
        theirs = components.service.login(other.email, strong_password).tokens
        assert components.service.logout(theirs.refresh_token, user=user) is False
        assert components.tokens.refresh(theirs.refresh_token) is not None

    def test_logout_everywhere(self, components, user, strong_password):
        for _ in range(2):
            components.service.login(user.email, strong_password)
        assert components.service.logout_everywhere(user) == 3
        assert components.tokens.active_sessions(user.id) == []

        logouts = _events(components, AuthEventType.LOGOUT, user_id=user.id)
        assert logouts[0].metadata == {"scope": "all", "sessions_revoked": 3}


def test_run_retention(components, user, clock):
    clock.advance(days=400)
    components.audit.record(AuthEventType.LOGIN, True, user_id=user.id)
    tokens, entries = components.run_retention(365)
    assert tokens == 1
    assert entries >= 1
    assert len(components.audit.user_history(user.id)) == 1
