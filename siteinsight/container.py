"""SiteInsight: Service Container.

Builds and holds the process-wide singletons.

Provides:
- Database engine and session factory
- Provider clients (GA4, Search Console, OAuth token endpoint)
- Stores (credentials, documents, cache, tenants)
- Services (ingestion, quota) and the scheduled job bodies
- Spreadsheet export gateway, when a service account is configured
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from siteinsight.config import Settings
from siteinsight.connectors.ga4.client import GA4Client
from siteinsight.connectors.google.oauth import GoogleTokenRefresher
from siteinsight.connectors.gsc.client import SearchConsoleClient
from siteinsight.core.logging import get_logger
from siteinsight.core.security import TokenCipher
from siteinsight.credentials.store import CredentialStore
from siteinsight.database import create_db_engine, session_factory
from siteinsight.export.sheets import ServiceAccountTokenProvider, SheetsExportGateway
from siteinsight.ingest.pipeline import IngestionService
from siteinsight.quota import QuotaService
from siteinsight.scheduler.jobs import ScheduledJobs
from siteinsight.storage.cache import CacheStore
from siteinsight.storage.document_store import DocumentStore
from siteinsight.storage.gateway import PersistenceGateway
from siteinsight.storage.tenants import TenantRepository

logger = get_logger("container")


@dataclass
class Container:
    settings: Settings
    engine: Optional[Engine] = None

    def __post_init__(self):
        s = self.settings

        # ---------- Storage ----------
        if self.engine is None:
            self.engine = create_db_engine(s.effective_database_url)
        self.sessions = session_factory(self.engine)
        self.documents = DocumentStore(self.sessions)
        self.gateway = PersistenceGateway(self.documents, self.sessions)
        self.cache = CacheStore(self.sessions, ttl_seconds=s.cache_ttl_seconds)
        self.tenants = TenantRepository(self.sessions)

        # ---------- Providers ----------
        timeout = s.provider_timeout_seconds
        self.refresher = GoogleTokenRefresher(
            s.google_client_id, s.google_client_secret, s.google_token_url, timeout=timeout
        )
        self.ga4 = GA4Client(s.ga4_base_url, timeout=timeout)
        self.gsc = SearchConsoleClient(s.gsc_base_url, timeout=timeout, lag_days=s.gsc_lag_days)

        # ---------- Credentials ----------
        self.cipher = TokenCipher(s.token_encryption_key)
        self.credentials = CredentialStore(
            self.sessions,
            self.cipher,
            self.refresher,
            leeway_seconds=s.token_refresh_leeway_seconds,
        )

        # ---------- Services ----------
        self.ingestion = IngestionService(
            self.credentials,
            self.ga4,
            self.gsc,
            self.gateway,
            self.documents,
            self.cache,
            window_days=s.ingest_window_days,
            top_n_limit=s.top_n_limit,
        )
        self.quota = QuotaService(self.sessions)

        # ---------- Export (optional) ----------
        self.exporter: Optional[SheetsExportGateway] = None
        if s.sheets_spreadsheet_id and (
            s.sheets_service_account_json or s.sheets_service_account_file
        ):
            self.exporter = SheetsExportGateway(
                ServiceAccountTokenProvider.from_settings(),
                spreadsheet_id=s.sheets_spreadsheet_id,
                range_=s.sheets_range,
                header_rows=s.sheets_header_rows,
                base_url=s.sheets_base_url,
                timeout=timeout,
            )
        else:
            logger.info("Spreadsheet export not configured; monthly export will fail fast")

        # ---------- Jobs ----------
        self.jobs = ScheduledJobs(
            self.tenants,
            self.ingestion,
            self.quota,
            self.cache,
            self.sessions,
            exporter=self.exporter,
            delay=s.tenant_delay_seconds,
            budget_seconds=s.job_time_budget_seconds,
        )

    async def close(self) -> None:
        """Release HTTP connection pools and the database engine."""
        for client in (self.refresher, self.ga4, self.gsc, self.exporter):
            if client is not None:
                await client.close()
        self.engine.dispose()
