from __future__ import annotations

from typing import Any

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_SOURCE_BUDGETS: dict[str, dict[str, int]] = {
    "google_maps": {"max_calls": 100, "window_seconds": 3600},
    "web_search": {"max_calls": 50, "window_seconds": 3600},
    "google_reviews": {"max_calls": 100, "window_seconds": 3600},
    "registry": {"max_calls": 200, "window_seconds": 3600},
    "competitor_research": {"max_calls": 30, "window_seconds": 3600},
}

DEFAULT_SOURCE_CONFIDENCE: dict[str, float] = {
    "google_maps": 85.0,
    "web_search": 75.0,
    "google_reviews": 65.0,
    "registry": 70.0,
    "competitor_research": 60.0,
}

DEFAULT_REQUIRED_FIELDS: list[str] = [
    "phone",
    "website",
    "address",
    "industry",
    "rating",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Prospect Research Pipeline"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Persistence
    database_url: str | None = None
    # Empty ATTEMPT_LOG_DIR keeps attempts in memory only.
    attempt_log_dir: str | None = "data/attempts"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # Pipeline
    pipeline_completeness_threshold: float = 0.8
    pipeline_required_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_FIELDS))
    pipeline_reliability_threshold: float = 70.0
    pipeline_max_workers: int = 4
    pipeline_default_timeout_seconds: float = 30.0
    pipeline_early_stop: bool = True

    # Sources
    source_budgets: dict[str, dict[str, int]] = Field(default_factory=lambda: dict(DEFAULT_SOURCE_BUDGETS))
    source_default_max_calls: int = 50
    source_default_window_seconds: int = 3600
    source_base_confidence: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SOURCE_CONFIDENCE))
    source_default_confidence: float = 70.0

    # Qualification
    qualification_rubric_path: str = "configs/qualification_rubric.v1.yaml"

    # Fixture-backed sources
    prospect_source_mode: str = "fixture"
    prospect_fixture_dir: str = "fixtures/prospects"
    prospect_fixture_base_url: str | None = None
    prospect_fixture_token: str | None = None

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "prospect_pipeline"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = []  # Empty by default for security

    def budget_for(self, source_id: str) -> tuple[int, int]:
        """Return (max_calls, window_seconds) for a source, falling back to defaults."""
        raw: dict[str, Any] = self.source_budgets.get(source_id) or {}
        max_calls = int(raw.get("max_calls", self.source_default_max_calls))
        window_seconds = int(raw.get("window_seconds", self.source_default_window_seconds))
        return max_calls, window_seconds

    def confidence_for(self, source_id: str) -> float:
        """Return the base confidence weight declared for a source."""
        return float(self.source_base_confidence.get(source_id, self.source_default_confidence))

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
