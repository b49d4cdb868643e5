"""
core/config.py -- Centralized application configuration via pydantic-settings.

Every environment variable the auth service reads is declared on Settings.

Patterns:
  Cached singleton: get_settings() builds Settings on first call and hands
      back the same instance afterwards.

  Explicit injection below the edge: only the app lifespan and the CLI call
      get_settings(). Every auth component (PasswordPolicy, TokenIssuer,
      MfaEngine, AuditLog) receives its slice of Settings in its constructor,
      so a test can build a component with a different policy without
      touching the cached singleton.

  Nested groups: password_policy and anomaly are plain BaseModels nested in
      Settings. They read from prefixed env vars using the "__" delimiter,
      e.g. PASSWORD_POLICY__MINIMUM_LENGTH=12 or ANOMALY__FAILED_LOGIN_LIMIT=10.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 refresh
  token hashing and JWT signing both rely on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. A random key in production would silently invalidate every
  issued token on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("taskflow.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'taskflow_auth.db'}"


class PasswordPolicySettings(BaseModel):
    """Rule set consumed by auth.passwords.PasswordPolicy.

    password_expiration_days <= 0 disables expiry. max_consecutive_characters
    <= 0 disables the identical-run rule.
    """

    minimum_length: int = 8
    maximum_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special_character: bool = True
    special_characters: str = '!@#$%^&*(),.?":{}|<>'
    password_history_count: int = 5
    password_expiration_days: int = 90
    prevent_common_passwords: bool = True
    prevent_user_info_in_password: bool = True
    max_consecutive_characters: int = 3


class AnomalyThresholds(BaseModel):
    """Threshold rules for auth.audit.AuditLog.

    Simple counts over trailing windows -- deliberately not a learned model.
    Flagged for tuning once real traffic data exists.
    """

    failed_login_limit: int = 5
    failed_login_window_minutes: int = 15
    ip_email_limit: int = 3
    ip_window_minutes: int = 15
    distinct_ip_limit: int = 5
    suspicious_window_hours: int = 24


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "taskflow"
    jwt_audience: str = "taskflow-client"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    # Rotated/revoked/expired tokens are kept this long past expiry so reuse
    # of a stolen token is still detectable, then purged by the sweep.
    refresh_token_retention_days: int = 30

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "TaskFlow"
    # Signs the short-lived MFA challenge token. Falls back to secret_key.
    mfa_secret_key: str = ""
    mfa_token_expire_minutes: int = 5
    mfa_backup_code_count: int = 8
    max_failed_mfa_attempts: int = 5
    lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Passwords and audit
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_policy: PasswordPolicySettings = Field(default_factory=PasswordPolicySettings)
    anomaly: AnomalyThresholds = Field(default_factory=AnomalyThresholds)
    audit_retention_days: int = 365

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.mfa_secret_key:
            self.mfa_secret_key = self.secret_key
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Only the app lifespan and the CLI should call this; components take their
    configuration as constructor arguments.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
