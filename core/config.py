"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StrmAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and the one-time-code bounds.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC over stored verification codes both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [C2] Verification codes must have at least 6 decimal digits and expire within
       15 minutes. A shorter code or a longer window makes brute force over the
       validity window practical.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("strmauth.config")

_MAX_CODE_EXPIRE_SECONDS = 15 * 60
_MIN_CODE_LENGTH = 6


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///strmauth.db"

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    token_expire_seconds: int = 12 * 3600
    bcrypt_rounds: int = 12
    # Password reset revokes every session issued before the reset.
    revoke_sessions_on_password_reset: bool = True

    # ------------------------------------------------------------------
    # One-time verification codes
    # ------------------------------------------------------------------

    code_length: int = 6
    code_expire_seconds: int = 600
    code_max_attempts: int = 5
    code_resend_interval_seconds: int = 60
    # Consumed/expired codes are kept this long so replays still report
    # AlreadyUsed/Expired instead of Mismatch.
    code_retention_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Per-identity limits (auth/ratelimit.py, backed by `limits`)
    login_max_attempts: int = 5
    login_window_seconds: int = 600
    rate_limit_storage_uri: str = "memory://"
    rate_limit_strategy: str = "fixed-window"

    # Per-address limits (api/limiter.py, slowapi)
    login_rate_limit: str = "20/minute"
    send_code_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Mail (empty smtp_host means development mode: codes are logged)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_ssl: bool = True
    mail_from: str = ""
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP / background work
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 3600
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_code_policy(self) -> "Settings":
        """Reject code settings that make brute force feasible [C2]."""
        if self.code_length < _MIN_CODE_LENGTH:
            raise ValueError(f"CODE_LENGTH must be at least {_MIN_CODE_LENGTH} digits.")
        if not 0 < self.code_expire_seconds <= _MAX_CODE_EXPIRE_SECONDS:
            raise ValueError(f"CODE_EXPIRE_SECONDS must be between 1 and {_MAX_CODE_EXPIRE_SECONDS}.")
        if self.code_max_attempts < 1:
            raise ValueError("CODE_MAX_ATTEMPTS must be at least 1.")
        return self

    @property
    def mail_configured(self) -> bool:
        return bool(self.smtp_host and (self.mail_from or self.smtp_user))


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
