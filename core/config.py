"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for BlogAPI happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning; production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT HMAC signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently invalidate
       every access token on restart.

  [M8] BCRYPT_ROUNDS below 10 is only accepted in DEBUG mode (test suites use
       the bcrypt minimum of 4 to keep hashing fast).

The auth/ package never imports this module. api/main.py reads Settings and
hands explicit, immutable config objects (TokenConfig, LedgerConfig) to the
auth components at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("blogapi.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'blogapi_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    List fields (ADMIN_ROLE_NAMES, ALLOWED_HOSTS, CORS_ORIGINS) are read from
    the environment as JSON arrays, e.g. ALLOWED_HOSTS='["api.example.com"]'.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Access tokens (JWT)
    # ------------------------------------------------------------------

    jwt_issuer: str = "BlogAPI"
    jwt_audience: str = "BlogAPIUsers"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=1440, gt=0)

    # ------------------------------------------------------------------
    # Refresh tokens and passwords
    # ------------------------------------------------------------------

    refresh_token_expire_days: int = Field(default=30, gt=0)
    # Expired refresh rows are hard-deleted by a background task in api/main.py.
    token_cleanup_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    # Roles that satisfy the "admin override" in owner-or-admin checks.
    admin_role_names: list[str] = ["Admin"]

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Access tokens will not persist across restarts."
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
    def validate_bcrypt_rounds(self) -> "Settings":
        """Refuse a weak bcrypt cost factor outside DEBUG mode [M8]."""
        if self.bcrypt_rounds < 10 and not self.debug:
            raise ValueError("BCRYPT_ROUNDS must be at least 10 in production mode.")
        return self

    @model_validator(mode="after")
    def validate_jwt_algorithm(self) -> "Settings":
        """Only symmetric HMAC-SHA2 algorithms are supported for access tokens."""
        if self.jwt_algorithm not in ("HS256", "HS384", "HS512"):
            raise ValueError("JWT_ALGORITHM must be one of HS256, HS384, HS512.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    This is the official FastAPI pattern for config (see FastAPI docs /advanced/settings/).
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
