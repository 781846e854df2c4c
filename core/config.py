"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ServiceMap happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Cross-field checks after all fields are
      resolved. A misconfigured store or sweep interval is a startup failure,
      not a runtime surprise.

Layer rule: core/ is the kernel. This module may not import from api/ or
inventory/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("servicemap.config")

DEFAULT_DATABASE_URL = "sqlite:///servicemap.db"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


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
    log_level: str = "INFO"

    # SQLAlchemy URL. PostgreSQL: postgresql://user:pw@host/servicemap
    database_url: str = DEFAULT_DATABASE_URL

    # ------------------------------------------------------------------
    # Dynamic host lifecycle
    # ------------------------------------------------------------------

    # Seconds between expiry sweeps. Bounded so a sweep always runs at least
    # once a minute.
    dynamic_host_sweep_seconds: int = 60
    sweep_on_startup: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Host headers accepted by TrustedHostMiddleware. Env: ALLOWED_HOSTS='["a","b"]'
    allowed_hosts: list[str] = ["*"]
    search_rate_limit: str = "120/minute"
    ingest_rate_limit: str = "600/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Reject settings the service cannot start with.

        DATABASE_URL must be set to something. The sweep interval must be
        1..60 seconds. LOG_LEVEL must name a standard logging level.
        DEBUG=true forces DEBUG logging.
        """
        if not self.database_url.strip():
            raise ValueError("DATABASE_URL must not be empty.")
        if not 1 <= self.dynamic_host_sweep_seconds <= 60:
            raise ValueError("DYNAMIC_HOST_SWEEP_SECONDS must be between 1 and 60.")
        self.log_level = self.log_level.upper()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}.")
        if self.debug and self.log_level != "DEBUG":
            logger.info("DEBUG=true, raising log level to DEBUG")
            self.log_level = "DEBUG"
        if not self.allowed_hosts:
            raise ValueError("ALLOWED_HOSTS must list at least one host pattern.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
