"""
Tasseo Engine - Unified Configuration

Single source of truth for worker and producer configuration.

CANONICAL ENVIRONMENT VARIABLES:
--------------------------------
Store:
  SUPABASE_URL                  - Supabase project REST URL (https://xxx.supabase.co)
  SUPABASE_SERVICE_ROLE_KEY     - Service role JWT (server-side only)

Environment control:
  ENVIRONMENT                   - dev | staging | prod (default: dev)
  LOG_LEVEL                     - DEBUG | INFO | WARNING | ERROR (default: INFO)

Integrations:
  TELEGRAM_BOT_TOKEN            - Bot API token used by the transport
  OPENROUTER_API_KEY            - Key for vision / interpretation / chat models
  OPENROUTER_BASE_URL           - OpenAI-compatible endpoint (default: OpenRouter)

Pipeline policy:
  REJECTION_CONFIDENCE_THRESHOLD - classifier confidence needed to reject (default: 0.8)
  MAX_DAILY_INVALID_RESPONSES    - personalized rejections per identity per UTC day (default: 5)
  LINK_CACHE_TTL_SECONDS         - account-shape cache TTL (default: 300)
  QUEUE_MAX_ATTEMPTS             - deliveries per job, first try included (default: 4)
  WORKER_CONCURRENCY             - pollers per queue kind (default: 2)

Usage:
------
    from tasseo.config import get_settings

    settings = get_settings()
    print(settings.rejection_threshold)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for workers and producers.

    Loads from environment variables with fallback to the file named by
    ENV_FILE (default: .env).
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # STORE
    # =========================================================================

    SUPABASE_URL: str = Field(default="", description="Supabase project REST URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="", description="Supabase service role JWT key")

    # =========================================================================
    # ENVIRONMENT CONTROL
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(default="dev")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    # =========================================================================
    # INTEGRATIONS
    # =========================================================================

    TELEGRAM_BOT_TOKEN: str = Field(default="", description="Telegram Bot API token")
    TELEGRAM_API_URL: str = Field(default="https://api.telegram.org")
    OPENROUTER_API_KEY: str = Field(default="", description="OpenRouter API key")
    OPENROUTER_BASE_URL: str = Field(default="https://openrouter.ai/api/v1")
    MODEL_VISION: str = Field(default="anthropic/claude-3.5-sonnet")
    MODEL_INTERPRETATION: str = Field(default="anthropic/claude-3.5-sonnet")
    MODEL_CHAT: str = Field(default="anthropic/claude-3.5-sonnet")
    LLM_TIMEOUT_SECONDS: float = Field(default=60.0)

    # =========================================================================
    # PIPELINE POLICY
    # =========================================================================

    REJECTION_CONFIDENCE_THRESHOLD: float = Field(default=0.8)
    MAX_DAILY_INVALID_RESPONSES: int = Field(default=5)
    LINK_CACHE_TTL_SECONDS: float = Field(default=300.0)
    LINK_CACHE_MAX_ENTRIES: int = Field(default=10_000)
    TELEGRAM_SAFE_LIMIT: int = Field(default=4000, description="Chunk size for delivery")
    PHOTO_SIZE_LIMIT_BYTES: int = Field(default=10 * 1024 * 1024)

    # =========================================================================
    # QUEUE & RETRY
    # =========================================================================

    QUEUE_MAX_ATTEMPTS: int = Field(default=4, description="First try + 3 redeliveries")
    WORKER_CONCURRENCY: int = Field(default=2)
    POLL_INTERVAL_SECONDS: float = Field(default=2.0)
    RETRY_MAX_ATTEMPTS: int = Field(default=3)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=30.0)

    # =========================================================================
    # VALIDATION & NORMALIZATION
    # =========================================================================

    @model_validator(mode="before")
    @classmethod
    def _normalize_values(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Strip whitespace/quotes and normalize ENVIRONMENT aliases."""
        for key, value in list(values.items()):
            if isinstance(value, str):
                values[key] = value.strip().strip('"').strip("'").strip()

        for env_key in ("ENVIRONMENT", "environment"):
            if env_key not in values:
                continue
            raw = str(values[env_key]).lower()
            if raw == "production":
                values[env_key] = "prod"
            elif raw == "development":
                values[env_key] = "dev"
        return values

    @field_validator("REJECTION_CONFIDENCE_THRESHOLD")
    @classmethod
    def _clamp_threshold(cls, v: float) -> float:
        if v < 0.0 or v > 1.0:
            logger.warning("REJECTION_CONFIDENCE_THRESHOLD=%s outside [0,1]; clamping", v)
        return min(1.0, max(0.0, v))

    @field_validator(
        "MAX_DAILY_INVALID_RESPONSES",
        "QUEUE_MAX_ATTEMPTS",
        "WORKER_CONCURRENCY",
        "RETRY_MAX_ATTEMPTS",
        "TELEGRAM_SAFE_LIMIT",
        "LINK_CACHE_MAX_ENTRIES",
    )
    @classmethod
    def _require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    # =========================================================================
    # PROPERTY ALIASES
    # =========================================================================

    @property
    def supabase_url(self) -> str:
        return self.SUPABASE_URL

    @property
    def supabase_service_role_key(self) -> str:
        return self.SUPABASE_SERVICE_ROLE_KEY

    @property
    def environment(self) -> Literal["dev", "staging", "prod"]:
        return self.ENVIRONMENT

    @property
    def log_level(self) -> str:
        return self.LOG_LEVEL

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def rejection_threshold(self) -> float:
        return self.REJECTION_CONFIDENCE_THRESHOLD

    @property
    def max_daily_invalid_responses(self) -> int:
        return self.MAX_DAILY_INVALID_RESPONSES

    @property
    def queue_max_attempts(self) -> int:
        return self.QUEUE_MAX_ATTEMPTS


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once. ENV_FILE is read
    at call time so tests can point it elsewhere.
    """
    return Settings(_env_file=os.environ.get("ENV_FILE", ".env"))


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()
