from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "discogs-atlas"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    discogs_base_url: str = "https://api.discogs.com"
    discogs_user_agent: str = "DiscogsAtlas/0.1"
    discogs_consumer_key: str | None = None
    discogs_consumer_secret: str | None = None
    http_timeout_seconds: float = 10.0
    request_delay_seconds: float = 1.5
    rate_limit_cooldown_seconds: float = 60.0
    rate_limit_max_retries: int = 3
    collection_page_size: int = 50
    analysis_batch_size: int = 5
    item_pacing_seconds: float = 0.0
    job_retention_hours: int = 24
    run_lease_seconds: int = 300
    worker_poll_interval_seconds: float = 5.0
    worker_max_backoff_seconds: float = 60.0
    worker_batch_size: int = 5
    purge_interval_seconds: float = 600.0
    otel_enabled: bool = True
    otel_service_name: str = "discogs-atlas"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
