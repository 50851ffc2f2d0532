"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Tripwise happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance in the constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      composition roots (api/main.py lifespan, main.py CLI, api/limiter.py)
      call it; every service receives the instance explicitly.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets once every field is resolved.

Security notes:
  [S1] Access and refresh tokens are signed with DISTINCT secrets. A leaked
       access secret must not let an attacker mint refresh tokens, and the
       refresh secret also salts the refresh-token fingerprints in Redis.

  [S2] In production mode (DEBUG not set or false), a missing secret is a hard
       startup failure. Secrets shorter than 32 chars are rejected in both
       modes.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tripwise.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    environment: str = "production"
    database_url: str = "sqlite:///tripwise.db"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured"; see validate_secrets().
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    access_token_expire_seconds: int = 24 * 60 * 60  # 1 day
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60  # 7 days
    password_reset_expire_seconds: int = 60 * 60
    email_verification_expire_seconds: int = 24 * 60 * 60
    bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    # Short network timeout: a slow cache degrades to the durable fallback.
    redis_socket_timeout: float = 2.0
    user_cache_ttl_seconds: int = 60 * 60
    permission_cache_ttl_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Permission engine
    # ------------------------------------------------------------------

    # "openfga" -- remote OpenFGA-compatible HTTP API
    # "memory"  -- in-process tuple store (development and tests)
    # "disabled" -- every check is an explicit deny
    permission_engine: str = "memory"
    fga_api_url: str = "http://localhost:8080"
    fga_store_id: str = ""
    fga_model_id: str = ""
    fga_api_token: str = ""
    fga_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Empty means "use redis_url" so counters share the cache infrastructure.
    rate_limit_storage_uri: str = ""
    login_rate_limit: str = "10/minute"
    auth_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    token_cleanup_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing secret policy [S1] [S2].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start without both secrets.
        """
        for field in ("jwt_access_secret", "jwt_refresh_secret"):
            value = getattr(self, field)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
            if len(getattr(self, field)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{field.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.permission_engine not in ("openfga", "memory", "disabled"):
            raise ValueError("PERMISSION_ENGINE must be one of: openfga, memory, disabled.")
        return self

    @property
    def is_production(self) -> bool:
        return not self.debug and self.environment == "production"

    @property
    def limiter_storage_uri(self) -> str:
        return self.rate_limit_storage_uri or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
