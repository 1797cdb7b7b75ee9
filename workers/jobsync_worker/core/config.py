from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    job_sync_sources: list[str] = ["greenhouse", "lever", "workable", "remoteok", "himalayas", "jobicy"]
    job_sync_interval_seconds: float = 3600.0
    discovery_enabled: bool = True
    discovery_interval_seconds: float = 21600.0
    stuck_sweep_interval_seconds: float = 600.0
    otel_enabled: bool = True
    otel_service_name: str = "remote-jobsync-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
