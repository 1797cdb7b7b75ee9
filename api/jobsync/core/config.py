from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "remote-jobsync-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    sync_lock_window_seconds: int = 120
    stuck_run_threshold_seconds: int = 3600
    provider_timeout_seconds: float = 10.0
    provider_max_attempts: int = 3
    provider_retry_base_seconds: float = 1.0
    provider_retry_max_seconds: float = 10.0
    greenhouse_min_interval_seconds: float = 1.0
    lever_min_interval_seconds: float = 1.0
    workable_min_interval_seconds: float = 1.0
    remoteok_min_interval_seconds: float = 2.0
    himalayas_min_interval_seconds: float = 2.0
    jobicy_min_interval_seconds: float = 2.0
    aggregator_max_pages: int = 10
    greenhouse_seed_companies: list[str] = ["gitlab", "vercel", "webflow", "duolingo", "grafanalabs"]
    lever_seed_companies: list[str] = ["netlify", "spotify", "plaid", "attentive"]
    workable_seed_companies: list[str] = ["workable", "hotjar", "doist", "typeform"]
    discovery_batch_size: int = 25
    discovery_probe_interval_seconds: float = 0.5
    discovery_recheck_after_hours: int = 168
    discovery_prune_after_checks: int = 3
    progress_retention_seconds: int = 3600
    otel_enabled: bool = True
    otel_service_name: str = "remote-jobsync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
