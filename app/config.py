from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Lead Miner"
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"

    # Providers
    serpapi_api_key: str | None = None
    openai_api_key: str | None = None
    registry_base_url: str = "https://projects.propublica.org/nonprofits/api/v2"

    # Classification/Runtime
    classification_model: str = "gpt-4o-mini"
    classification_temperature: float = 0.1
    lead_miner_mode: str = "fixture"
    lead_miner_fixture_dir: str = "fixtures/sample"

    # Acceptance and minimum-yield escalation
    confidence_threshold: float = 0.60
    min_leads_floor: int = 5
    max_escalation_attempts: int = 3
    threshold_decrement: float = 0.10
    threshold_floor: float = 0.40
    seed_fallback_attempt: int = 3
    seed_threshold: float = 0.30

    # Identity history
    history_dir: str = "data/pipeline"
    query_readmission_hours: float = 24.0
    lead_readmission_days: float = 7.0
    event_date_tolerance_days: int = 7

    # Discovery
    similarity_threshold: float = 0.85
    max_leads_per_run: int = 10
    max_search_queries: int = 50
    queries_per_pass: int = 15
    max_results_per_query: int = 3
    max_candidates_per_pass: int = 40
    search_months: list[str] = ["March", "April", "May", "October", "November"]
    search_quarters: list[str] = ["Q2", "Q4"]
    event_date_range: str | None = None
    event_forward_window_days: int = 365
    expand_date_variants: bool = False

    # External call pacing
    search_delay_seconds: float = 0.1
    classification_delay_seconds: float = 0.5
    verification_delay_seconds: float = 0.3
    external_call_timeout_seconds: float = 30.0
    external_call_max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0

    # Cost accounting
    budget_limit: float = 50.0
    search_cost: float = 0.02
    classification_cost: float = 0.01
    verification_cost: float = 0.005
    cache_max_entries: int | None = None
    cache_ttl_seconds: float | None = None

    # Delivery
    leads_output_path: str = "output/leads.json"
    slack_webhook_url: str | None = None
    dry_run: bool = False

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "lead_miner"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
