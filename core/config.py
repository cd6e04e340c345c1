"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for civicauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Settings
      are immutable process-wide state after startup.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation of the three signing
      secrets. Dev mode generates missing secrets with a warning, production
      mode refuses to start without them.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HMAC-SHA256 and
       JWT signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] Access and refresh tokens must be signed with distinct secrets, so an
       access token can never be replayed as a refresh token or vice versa.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or audit/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("civicauth.config")

_SECRET_FIELDS = ("jwt_access_secret", "jwt_refresh_secret", "session_secret")


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
    log_level: str = "INFO"
    database_url: str = "sqlite:///civicauth.db"

    # Empty string is the sentinel for "not configured". The model_validator
    # either generates a dev secret or raises, so callers never see "".
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    session_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # 15 minutes. The previous deployment ran with a one-minute lifetime,
    # which was a debugging leftover; override via ACCESS_TOKEN_TTL_SECONDS.
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    # Lifetime of an emailed password reset link.
    password_reset_ttl_seconds: int = 3600
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Google OAuth (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # Public base URLs used to build the OAuth callback and the frontend
    # redirect targets.
    backend_url: str = "http://localhost:5000"
    frontend_url: str = "http://localhost:5173"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    refresh_rate_limit: str = "30/minute"
    password_reset_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    # Empty means notifications are written to the log only.
    notify_webhook_url: str = ""
    notify_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    # Worker threads persisting audit records off the request path.
    audit_workers: int = 2

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Sessions will not survive restart.

        Production mode: refuse to start if any secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject an
            access secret equal to the refresh secret.
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if min(self.access_token_ttl_seconds, self.refresh_token_ttl_seconds, self.password_reset_ttl_seconds) <= 0:
            raise ValueError("Token lifetimes must be positive.")
        return self

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
