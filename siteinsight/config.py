"""SiteInsight: Central Configuration via Pydantic Settings."""

import os
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Google OAuth ──
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"

    # ── Provider APIs ──
    ga4_base_url: str = "https://analyticsdata.googleapis.com/v1beta"
    gsc_base_url: str = "https://searchconsole.googleapis.com/webmasters/v3"
    provider_timeout_seconds: float = 30.0

    # ── Database ──
    database_url: str = ""
    token_encryption_key: str = ""

    # ── Spreadsheet export ──
    sheets_base_url: str = "https://sheets.googleapis.com/v4/spreadsheets"
    sheets_spreadsheet_id: str = ""
    sheets_range: str = "Sheet1!A:N"
    sheets_header_rows: int = 1
    sheets_service_account_file: Optional[str] = None
    sheets_service_account_json: Optional[str] = None

    # ── Scheduler ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    scheduler_timezone: str = "Asia/Tokyo"
    daily_ingest_hour: int = 2
    cache_cleanup_hour: int = 3
    quota_reset_hour: int = 0
    benchmark_hour: int = 1
    export_hour: int = 4
    tenant_delay_seconds: float = 1.0
    job_time_budget_seconds: float = 540.0

    # ── Ingestion ──
    ingest_window_days: int = 30
    gsc_lag_days: int = 3
    top_n_limit: int = 100
    token_refresh_leeway_seconds: int = 300
    cache_ttl_seconds: int = 3600
    cache_retention_hours: int = 24

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/siteinsight.db"
        return "sqlite:///./siteinsight.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
