"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobdispatch.constants import (
    DEFAULT_CONCURRENCY,
    DEFAULT_LOCK_DURATION_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_MS,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Queue connection
    connection_string: str
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Worker Configuration
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=1)
    worker_id: str | None = None
    worker_lock_duration_seconds: int = Field(default=DEFAULT_LOCK_DURATION_SECONDS, ge=1)
    worker_heartbeat_interval_seconds: float = 10.0
    worker_shutdown_timeout_seconds: float = 30.0
    task_modules: str = "jobdispatch.worker.handlers"

    # Retry policy
    default_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_backoff_base_seconds: float = 2.0
    retry_backoff_max_seconds: float = 3600.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobdispatch"
    metrics_port: int | None = None  # worker-only Prometheus endpoint
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def task_module_names(self) -> list[str]:
        """Handler modules the worker imports before its registry check."""
        return [name.strip() for name in self.task_modules.split(",") if name.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
