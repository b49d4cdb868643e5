"""
auth/passwords.py -- Password Policy Engine.

Stateless apart from its PasswordPolicySettings: validation, bcrypt hashing,
expiry and secure generation.

Security design decisions:
  Hashing: bcrypt directly (no passlib wrapper). Cost factor comes from
       Settings.bcrypt_rounds so tests can run at the minimum cost of 4.
       bcrypt only reads the first 72 bytes of its input and recent releases
       raise on longer input; we truncate explicitly so both hash() and
       verify() see the same bytes for any password the policy admits.

  Validation: every rule runs and every failure is reported, so the user can
       fix all problems in one round trip.

  Generation: secrets.SystemRandom (OS CSPRNG). Never random.Random -- its
       output is predictable from a few observed samples.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from itertools import groupby

import bcrypt

from auth.models import PasswordCheck, User
from core.config import PasswordPolicySettings

logger = logging.getLogger("taskflow.passwords")

_BCRYPT_MAX_BYTES = 72
_MIN_GENERATED_LENGTH = 12
_MAX_GENERATION_ATTEMPTS = 100

# Short list shipped with the original app. Compared case-insensitively.
COMMON_PASSWORDS: frozenset = frozenset(
    {
        "password",
        "123456",
        "password123",
        "12345678",
        "qwerty",
        "abc123",
        "monkey",
        "1234567",
        "letmein",
        "trustno1",
        "dragon",
        "baseball",
        "111111",
        "iloveyou",
        "master",
        "sunshine",
        "ashley",
        "bailey",
        "passw0rd",
        "shadow",
        "123123",
        "654321",
        "superman",
        "qazwsx",
    }
)

_EMAIL_SPLIT_RE = re.compile(r"[._+\-]")


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordPolicy:
    """Validate, hash and generate passwords against one PasswordPolicySettings.

    Usage:
        policy = PasswordPolicy(settings.password_policy, rounds=settings.bcrypt_rounds)
        check = policy.validate("hunter2", user)
        if not check.ok:
            print(check.violations)
    """

    def __init__(self, settings: PasswordPolicySettings, rounds: int = 12) -> None:
        self.settings = settings
        self._rounds = rounds
        self._rng = secrets.SystemRandom()
        # Timing equalization: authenticating an unknown email still runs one
        # bcrypt verification against this hash, so response time does not
        # reveal whether the account exists.
        self.dummy_hash = self.hash("taskflow_timing_dummy")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, password: str, user: User | None = None) -> PasswordCheck:
        if not password or not password.strip():
            return PasswordCheck(ok=False, violations=["Password is required"])

        s = self.settings
        violations: list[str] = []

        if len(password) < s.minimum_length:
            violations.append(f"Password must be at least {s.minimum_length} characters long")
        if len(password) > s.maximum_length:
            violations.append(f"Password must not exceed {s.maximum_length} characters")

        if s.require_uppercase and not any(c.isascii() and c.isupper() for c in password):
            violations.append("Password must contain at least one uppercase letter")
        if s.require_lowercase and not any(c.isascii() and c.islower() for c in password):
            violations.append("Password must contain at least one lowercase letter")
        if s.require_digit and not any(c in string.digits for c in password):
            violations.append("Password must contain at least one digit")
        if s.require_special_character and not any(c in s.special_characters for c in password):
            violations.append(f"Password must contain at least one special character ({s.special_characters})")

        if self._has_long_run(password):
            violations.append(
                f"Password must not contain more than {s.max_consecutive_characters} consecutive identical characters"
            )

        if s.prevent_common_passwords and password.lower() in COMMON_PASSWORDS:
            violations.append("This password is too common. Please choose a more unique password")

        if s.prevent_user_info_in_password and user is not None and self._contains_user_info(password, user):
            violations.append("Password must not contain your name, email, or other personal information")

        return PasswordCheck(ok=not violations, violations=violations)

    def _has_long_run(self, password: str) -> bool:
        limit = self.settings.max_consecutive_characters
        if limit <= 0:
            return False
        return any(sum(1 for _ in group) > limit for _, group in groupby(password))

    @staticmethod
    def _contains_user_info(password: str, user: User) -> bool:
        lowered = password.lower()
        local_part = (user.email or "").split("@")[0]
        fragments = _EMAIL_SPLIT_RE.split(local_part) + (user.name or "").split()
        return any(len(part) > 3 and part.lower() in lowered for part in fragments)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash(self, password: str) -> str:
        """Return a salted bcrypt hash of the password."""
        return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, password: str, hashed: str | None) -> bool:
        """Return True if the password matches the bcrypt hash. Never raises."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(_encode(password), hashed.encode("utf-8"))
        except Exception:
            return False

    def is_in_history(self, password: str, hashes: list[str]) -> bool:
        """True if the password matches any of the given previous hashes."""
        return any(self.verify(password, h) for h in hashes)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def is_expired(self, user: User, now: datetime | None = None) -> bool:
        days = self.settings.password_expiration_days
        if days <= 0:
            return False
        changed = user.last_password_change or user.created_at
        if changed is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now > changed + timedelta(days=days)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_secure(self) -> str:
        """Return a random password that satisfies this policy.

        One character from each required class is guaranteed, the rest is
        drawn from the full alphabet and the result shuffled. Candidates that
        still fail validation (e.g. an unlucky identical-character run) are
        discarded and redrawn.
        """
        s = self.settings
        special = s.special_characters or "!@#$%^&*"
        classes = [
            (s.require_uppercase, string.ascii_uppercase),
            (s.require_lowercase, string.ascii_lowercase),
            (s.require_digit, string.digits),
            (s.require_special_character, special),
        ]
        alphabet = string.ascii_uppercase + string.ascii_lowercase + string.digits + special
        length = max(s.minimum_length, _MIN_GENERATED_LENGTH)
        if s.maximum_length > 0:
            length = min(length, s.maximum_length)

        for _ in range(_MAX_GENERATION_ATTEMPTS):
            chars = [self._rng.choice(pool) for required, pool in classes if required]
            chars.extend(self._rng.choice(alphabet) for _ in range(length - len(chars)))
            self._rng.shuffle(chars)
            candidate = "".join(chars)
            if self.validate(candidate).ok:
                return candidate
            logger.debug("Discarded generated password that failed policy")
        raise ValueError("Password policy cannot be satisfied by a generated password")
