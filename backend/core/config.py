"""
Woza Mali Engine - Configuration

Single settings object for the intake pipeline, the reconciliation worker
and the realtime sync manager.

Environment variables:
----------------------
Required (only when a store client is built):
  SUPABASE_URL                  - Supabase project REST URL (https://xxx.supabase.co)
  SUPABASE_SERVICE_ROLE_KEY     - Service role JWT (server-side only)

Optional:
  SUPABASE_SCHEMA               - Postgres schema exposed by PostgREST (default: public)
  ENVIRONMENT                   - dev | staging | prod (default: dev)
  LOG_LEVEL                     - DEBUG | INFO | WARNING | ERROR (default: INFO)
  LOG_JSON                      - true for JSON log lines (default: false)

Realtime reconnection:
  REALTIME_BACKOFF_BASE_MS      - first reconnect delay (default: 1000)
  REALTIME_BACKOFF_FACTOR       - growth factor per attempt (default: 2.0)
  REALTIME_BACKOFF_CAP_MS       - delay ceiling (default: 30000)
  REALTIME_MAX_ATTEMPTS         - attempts before settling into disconnected (default: 8)
  REALTIME_SETTLE_DELAY_MS      - pause between teardown and resubscribe (default: 50)
  REALTIME_JOIN_TIMEOUT_MS      - how long a channel may take to reach SUBSCRIBED (default: 10000)

Reconciliation:
  RECONCILE_BATCH_SIZE          - collections scanned per pass (default: 100)
  RECONCILE_POLL_SECONDS        - sleep between passes in loop mode (default: 300)
  RECONCILE_MIN_AGE_SECONDS     - collections younger than this are left to the intake pipeline (default: 600)
  RECONCILE_BACKOFF_BASE_MS     - first retry delay after a failed pass (default: 5000)
  RECONCILE_BACKOFF_CAP_MS      - retry delay ceiling (default: 300000)
  RECONCILE_MAX_FAILURES        - consecutive failed passes before the worker exits (default: 5)

Usage:
    from backend.core.config import get_settings

    settings = get_settings()
    print(settings.supabase_url)
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the intake pipeline and workers.

    Values come from os.environ. The CLI entry points load a local .env
    (python-dotenv) before the first call to get_settings().
    """

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # SUPABASE
    # =========================================================================

    SUPABASE_URL: str = Field(default="", description="Supabase project REST URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(
        default="", description="Supabase service role JWT key"
    )
    SUPABASE_SCHEMA: str = Field(default="public", description="Exposed Postgres schema")

    # =========================================================================
    # ENVIRONMENT / LOGGING
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(default="dev")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_JSON: bool = Field(default=False, description="Emit JSON log lines")

    # =========================================================================
    # REALTIME RECONNECTION
    # =========================================================================

    REALTIME_BACKOFF_BASE_MS: int = Field(default=1000, gt=0)
    REALTIME_BACKOFF_FACTOR: float = Field(default=2.0, ge=1.0)
    REALTIME_BACKOFF_CAP_MS: int = Field(default=30000, gt=0)
    REALTIME_MAX_ATTEMPTS: int = Field(default=8, ge=1)
    REALTIME_SETTLE_DELAY_MS: int = Field(default=50, ge=0)
    REALTIME_JOIN_TIMEOUT_MS: int = Field(default=10000, gt=0)

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    RECONCILE_BATCH_SIZE: int = Field(default=100, ge=1)
    RECONCILE_POLL_SECONDS: float = Field(default=300.0, gt=0)
    RECONCILE_MIN_AGE_SECONDS: float = Field(default=600.0, ge=0)
    RECONCILE_BACKOFF_BASE_MS: int = Field(default=5000, gt=0)
    RECONCILE_BACKOFF_CAP_MS: int = Field(default=300000, gt=0)
    RECONCILE_MAX_FAILURES: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "Settings":
        if self.REALTIME_BACKOFF_CAP_MS < self.REALTIME_BACKOFF_BASE_MS:
            raise ValueError(
                "REALTIME_BACKOFF_CAP_MS must be >= REALTIME_BACKOFF_BASE_MS "
                f"(got cap={self.REALTIME_BACKOFF_CAP_MS}, base={self.REALTIME_BACKOFF_BASE_MS})"
            )
        if self.RECONCILE_BACKOFF_CAP_MS < self.RECONCILE_BACKOFF_BASE_MS:
            raise ValueError(
                "RECONCILE_BACKOFF_CAP_MS must be >= RECONCILE_BACKOFF_BASE_MS "
                f"(got cap={self.RECONCILE_BACKOFF_CAP_MS}, base={self.RECONCILE_BACKOFF_BASE_MS})"
            )
        return self

    # =========================================================================
    # CONVENIENCE ACCESSORS
    # =========================================================================

    @property
    def supabase_url(self) -> str:
        return self.SUPABASE_URL.strip()

    @property
    def supabase_service_role_key(self) -> str:
        return self.SUPABASE_SERVICE_ROLE_KEY.strip()

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    def require_supabase_credentials(self) -> tuple[str, str]:
        """Return (url, key) or raise naming every missing variable."""
        missing = [
            name
            for name, value in {
                "SUPABASE_URL": self.supabase_url,
                "SUPABASE_SERVICE_ROLE_KEY": self.supabase_service_role_key,
            }.items()
            if not value
        ]
        if missing:
            raise RuntimeError(
                "Missing Supabase credential(s) for environment "
                f"'{self.ENVIRONMENT}': " + ", ".join(missing)
            )
        return self.supabase_url, self.supabase_service_role_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached Settings instance."""
    settings = Settings()
    logger.debug(
        "Settings loaded (environment=%s, schema=%s)",
        settings.ENVIRONMENT,
        settings.SUPABASE_SCHEMA,
    )
    return settings


def reset_settings() -> None:
    """Drop the cached Settings so the next call re-reads the environment."""
    get_settings.cache_clear()
