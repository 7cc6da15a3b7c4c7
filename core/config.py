"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for App Budget happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning; production mode logs an error and lets the token service
      surface the misconfiguration as a 500 on every auth request.

Security notes:
  [M6] JWT_SECRET shorter than 32 chars is rejected outright. HMAC-SHA256
       signing relies on key entropy -- a short key weakens every token.

  [M7] A missing JWT_SECRET outside dev mode is not silently replaced by a
       random key (sessions would die on every restart). Requests that need
       a token fail loudly instead.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, appsettings/, budget/, or backup/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("appbudget.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    These are deployment settings (secrets, connection strings, limits). The
    user-editable configuration document (currency, session length, OIDC
    provider, bank accounts) lives in the database -- see appsettings/.
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
    app_version: str = "1.4.0"
    # Empty string is the sentinel for "not configured".
    jwt_secret: str = ""

    # ------------------------------------------------------------------
    # Relational store
    # ------------------------------------------------------------------

    database_url: str = ""
    pghost: str = ""
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "app_budget"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    admin_username: str = ""
    admin_password: str = ""
    password_min_length: int = 8
    password_reset_token_ttl_minutes: int = 60
    # No outbound e-mail: the raw reset token goes back to the caller.
    reset_token_in_response: bool = True
    oidc_state_ttl_seconds: int = 600
    frontend_base_url: str = "http://localhost:5173"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origin: str = "http://localhost:5173"
    allowed_hosts: str = "*"
    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Static uploads
    # ------------------------------------------------------------------

    uploads_dir: str = str(_PROJECT_ROOT / "uploads")
    avatar_max_bytes: int = 2 * 1024 * 1024

    # ------------------------------------------------------------------
    # Update notification
    # ------------------------------------------------------------------

    version_registry_url: str = ""
    version_check_ttl_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: an unset key is reported at startup and every token
            operation raises MisconfigurationError (500) until it is set.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("Using auto-generated JWT_SECRET. Sessions will not persist across restarts.")
            else:
                logger.error("JWT_SECRET is not set. Authentication endpoints will fail until it is configured.")
            return self
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def resolved_database_url(self) -> str:
        """Return the SQLAlchemy URL for the relational store.

        Precedence: DATABASE_URL, then the discrete PG* variables (only when
        PGHOST is set), then a local SQLite file for development.
        """
        if self.database_url:
            url = self.database_url
            # Hosted providers hand out libpq-style URLs; SQLAlchemy needs a driver.
            if url.startswith("postgres://"):
                url = "postgresql+psycopg://" + url[len("postgres://") :]
            elif url.startswith("postgresql://"):
                url = "postgresql+psycopg://" + url[len("postgresql://") :]
            return url
        if self.pghost:
            return (
                f"postgresql+psycopg://{self.pguser}:{self.pgpassword}"
                f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
            )
        return f"sqlite:///{_PROJECT_ROOT / 'app_budget.db'}"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origin.split(",") if o.strip()]

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()] or ["*"]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
