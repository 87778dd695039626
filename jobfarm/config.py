"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from JOBFARM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="JOBFARM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Protocol directory
    scratch_root: str = "."
    job_id_width: int = 10
    release_retries: int = 12
    release_backoff_seconds: float = 5.0
    cleanup_retries: int = 10
    cleanup_backoff_seconds: float = 1.0

    # Polling
    poll_interval_seconds: float = 1.0
    queue_poll_interval_seconds: float = 0.1

    # Local pool
    pool_max_workers: int | None = None

    # Cluster scheduler
    scheduler_max_tasks: int = 256
    scheduler_core_headroom: int = 8
    scheduler_max_cores: int = 1024
    scheduler_command_timeout_seconds: float = 120.0
    worker_command: str = "jobfarm-worker run"

    # Stall watchdog
    watchdog_interval_seconds: float = 120.0
    stall_grace_seconds: float = 120.0
    stall_cpu_ratio: float = 0.01

    # Queue daemon
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "jobfarm"

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobfarm"
    log_level: str = "INFO"
    log_format: str = "console"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
