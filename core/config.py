"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Ace Trade happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() at the
edges (API lifespan, CLI) and pass the Settings object down explicitly.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_expiry_minutes -> SESSION_EXPIRY_MINUTES).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the DEBUG-conditional SERVICE_TOKEN logic: dev
      mode generates a token with a warning, production mode refuses to start
      without one.

Security notes:
  SERVICE_TOKEN shorter than 32 chars is rejected outright. It is the only
  credential the trading terminal presents to the redemption API.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or chat/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("acetrade.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'acetrade_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true).
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
    log_level: str = "INFO"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev token or raises, so callers never see "".
    service_token: str = ""

    # ------------------------------------------------------------------
    # Datastore
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on waiting for a connection or a database lock.
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Trade terminal
    # ------------------------------------------------------------------

    trade_terminal_url: str = "http://localhost:3000"
    trade_terminal_auth_path: str = "/auth/login"

    # ------------------------------------------------------------------
    # One-time sessions
    # ------------------------------------------------------------------

    session_expiry_minutes: int = 5
    max_sessions_per_hour: int = 10
    cleanup_interval_seconds: int = 3600
    redeem_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    # Accepted TOTP drift in 30-second steps on either side of "now".
    totp_valid_window: int = 2
    # bcrypt cost factor for recovery keys. Tests drop this to 4.
    recovery_key_rounds: int = 12
    twofa_max_failed_attempts: int = 5
    twofa_lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    activity_limit: int = 20

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("trade_terminal_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """The auth path always starts with "/", so a trailing slash here would double it."""
        return value.rstrip("/")

    @field_validator("recovery_key_rounds")
    @classmethod
    def validate_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("RECOVERY_KEY_ROUNDS must be between 4 and 31 (bcrypt limits).")
        return value

    @model_validator(mode="after")
    def validate_service_token(self) -> "Settings":
        """Enforce SERVICE_TOKEN policy.

        Dev mode (DEBUG=true): auto-generate a random token with a warning.
            The terminal must be restarted with the new value -- acceptable for
            local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SERVICE_TOKEN is missing.

        Both modes: reject tokens shorter than 32 characters.
        """
        if not self.service_token:
            if self.debug:
                self.service_token = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SERVICE_TOKEN. The terminal will not be able to call the API.")
            else:
                raise ValueError(
                    "SERVICE_TOKEN is required in production mode. "
                    "Set SERVICE_TOKEN in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.service_token) < 32:
            raise ValueError("SERVICE_TOKEN must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and hand it to SecurityCore.
    """
    return Settings()
