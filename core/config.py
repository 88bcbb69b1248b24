"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SecurePower happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and the credential hashing floor.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. API key hashes
       are HMAC-SHA256(SECRET_KEY, key) -- a short key weakens them.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Rotating the key silently would invalidate every
       issued API key.

  [K1] PBKDF2_ITERATIONS below 100,000 is rejected. The PIN keyspace is tiny
       (at most 10^6 values); the iteration count is the only brake on an
       offline guess of a stolen hash.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
alerts/, or tracking/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("securepower.config")

MIN_PBKDF2_ITERATIONS = 100_000


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
    # Empty string means each store uses its own SQLite file beside its module.
    database_url: str = ""

    # ------------------------------------------------------------------
    # Credential gate
    # ------------------------------------------------------------------

    failed_attempt_threshold: int = 2
    lockout_seconds: int = 30
    pbkdf2_iterations: int = MIN_PBKDF2_ITERATIONS

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    location_retention_cap: int = 500
    session_max_age_hours: int = 24
    session_sweep_interval_seconds: int = 300
    tracking_base_url: str = "https://securepower.app/track"

    # ------------------------------------------------------------------
    # Alert dispatch
    # ------------------------------------------------------------------

    message_rate_limit_seconds: int = 300
    channel_timeout_seconds: float = 10.0

    # Providers (optional -- empty string means the channel is disabled)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    twilio_sms_from: str = ""
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "alerts@securepower.app"
    fcm_project_id: str = ""
    fcm_access_token: str = ""

    # ------------------------------------------------------------------
    # HTTP rate limiting
    # ------------------------------------------------------------------

    verify_rate_limit: str = "20/minute"
    api_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            API keys issued in this process stop working after a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "API keys will not survive a restart."
                )
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
    def validate_escalation_policy(self) -> "Settings":
        """Reject hashing and escalation values that would weaken the gate [K1]."""
        if self.pbkdf2_iterations < MIN_PBKDF2_ITERATIONS:
            raise ValueError(f"PBKDF2_ITERATIONS must be at least {MIN_PBKDF2_ITERATIONS}.")
        if self.failed_attempt_threshold < 1:
            raise ValueError("FAILED_ATTEMPT_THRESHOLD must be at least 1.")
        if self.lockout_seconds < 1:
            raise ValueError("LOCKOUT_SECONDS must be at least 1.")
        if self.location_retention_cap < 1:
            raise ValueError("LOCATION_RETENTION_CAP must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
