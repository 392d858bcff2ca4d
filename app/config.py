from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # Oracle providers
    ai_provider: str = "openai"
    ai_model: str = "gpt-4o-mini"
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    oracle_temperature: float = 0.3
    oracle_max_tokens: int = 500
    oracle_timeout_seconds: float = 30.0
    oracle_retry_attempts: int = 3
    oracle_call_interval_seconds: float = 0.5

    # Website scraping
    scraper_timeout_seconds: float = 10.0
    scraper_max_content_bytes: int = 50_000
    scraper_concurrency: int = 5
    scraper_batch_delay_seconds: float = 1.0

    # Enrichment
    enrichment_max_batch_size: int = 50
    enrichment_default_min_score: float = 5.0
    enrichment_deadline_seconds: float | None = None
    topic_match_max_concurrency: int = 10

    # Website analysis cache
    cache_freshness_days: int = 7
    cache_prune_days: int = 7

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "lead_enrichment"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    @property
    def oracle_api_key(self) -> str | None:
        """Return the credential matching the configured provider."""
        if self.ai_provider.lower() == "anthropic":
            return self.anthropic_api_key
        return self.openai_api_key

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
