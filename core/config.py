"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the AAA service happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Signing-key and token-lifetime misconfiguration is a startup
      failure, never a per-request one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  keyed refresh-token hash both rely on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. A random key would silently invalidate every issued token
  and every stored refresh-token hash on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
audit/, or jobs/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("aaa.config")

_MAX_LEEWAY_SECONDS = 300


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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///./aaa_service.db"
    audit_database_url: str = "sqlite:///./aaa_audit.db"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "aaa-service"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    # Tolerated clock skew when checking access-token expiry.
    jwt_leeway_seconds: int = 0

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_allowed_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    housekeeping_interval_seconds: int = 60 * 60

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
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Reject token lifetimes and skew tolerances that cannot be honoured."""
        if self.access_token_ttl_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be positive.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be longer than ACCESS_TOKEN_TTL_SECONDS.")
        if not 0 <= self.jwt_leeway_seconds <= _MAX_LEEWAY_SECONDS:
            raise ValueError(f"JWT_LEEWAY_SECONDS must be between 0 and {_MAX_LEEWAY_SECONDS}.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.housekeeping_interval_seconds <= 0:
            raise ValueError("HOUSEKEEPING_INTERVAL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
