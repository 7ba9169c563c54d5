"""
durable_sdk.tier0_core.config
──────────────────────────────
Typed configuration with env layering. Reads from .env → environment
variables. All fields are typed via Pydantic and validated once at startup.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DurableConfig(BaseSettings):
    """
    Typed engine configuration.
    All env vars are prefixed with DURABLE_ unless overridden.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="durable", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")

    # ── Persistence ───────────────────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./durable.db",
        alias="DATABASE_URL",
    )
    store_backend: str = Field(default="memory", alias="DURABLE_STORE_BACKEND")

    # ── Job queue ─────────────────────────────────────────────────────────────
    queue_backend: str = Field(default="inprocess", alias="DURABLE_QUEUE_BACKEND")
    job_max_attempts: int = Field(default=3, alias="DURABLE_JOB_MAX_ATTEMPTS")
    job_backoff_min: float = Field(default=0.5, alias="DURABLE_JOB_BACKOFF_MIN")
    job_backoff_max: float = Field(default=30.0, alias="DURABLE_JOB_BACKOFF_MAX")
    activity_release_delay: float = Field(
        default=5.0, alias="DURABLE_ACTIVITY_RELEASE_DELAY"
    )

    # ── Serialization ─────────────────────────────────────────────────────────
    serialize_format: str = Field(default="pickle", alias="DURABLE_SERIALIZE_FORMAT")

    # ── Compensation ──────────────────────────────────────────────────────────
    compensation_max_workers: int = Field(
        default=4, alias="DURABLE_COMPENSATION_MAX_WORKERS"
    )

    # ── Notifications ─────────────────────────────────────────────────────────
    events_backend: str = Field(default="log", alias="DURABLE_EVENTS_BACKEND")
    events_webhook_url: str | None = Field(default=None, alias="DURABLE_EVENTS_WEBHOOK_URL")

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="DURABLE_LOG_LEVEL")
    log_format: str = Field(default="json", alias="DURABLE_LOG_FORMAT")

    # ── Observability ─────────────────────────────────────────────────────────
    error_backend: str = Field(default="none", alias="DURABLE_ERROR_BACKEND")
    metrics_port: int = Field(default=8001, alias="DURABLE_METRICS_PORT")

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("store_backend", "queue_backend", "events_backend", "serialize_format")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.lower()

    @field_validator("job_max_attempts", "compensation_max_workers")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def get_config() -> DurableConfig:
    """
    Return the singleton engine config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return DurableConfig()


def _reset_config() -> None:
    """For tests: clear the config cache."""
    get_config.cache_clear()


__all__ = ["DurableConfig", "get_config"]
