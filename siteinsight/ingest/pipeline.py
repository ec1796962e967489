"""SiteInsight: Ingestion Pipeline.

Runs the per-tenant data flow:
  credential → provider report(s) → aggregate → persist

Daily ingest covers a trailing window per provider. Monthly rollups (previous
calendar month) feed the benchmark store and the spreadsheet export and are
cached briefly so both jobs share one provider round-trip.
"""

from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from siteinsight.aggregation.engine import (
    aggregate_daily,
    merge_event_counts,
    summarize,
    summarize_month,
    top_n_record,
)
from siteinsight.config import settings
from siteinsight.connectors.ga4.client import GA4Client, event_name_filter
from siteinsight.connectors.gsc.client import SearchConsoleClient
from siteinsight.core.dates import DateWindow, utcnow
from siteinsight.core.errors import CredentialError, CredentialErrorReason
from siteinsight.core.logging import get_logger
from siteinsight.core.metric_registry import (
    GA4_DAILY_EVENTS,
    GA4_DAILY_TRAFFIC,
    GA4_MONTHLY,
    GA4_MONTHLY_EVENTS,
    GSC_PAGE_DIMENSION,
    GSC_PERFORMANCE,
    GSC_QUERY_DIMENSION,
)
from siteinsight.core.parsing import safe_int
from siteinsight.credentials.store import CredentialStore
from siteinsight.export.rows import ExportRow
from siteinsight.models.records import MonthlyRollup, WindowAggregates
from siteinsight.models.tenant_models import Provider, Site
from siteinsight.storage.cache import CacheStore, cache_key
from siteinsight.storage.document_store import BENCHMARK_CONTRACT, DocumentStore
from siteinsight.storage.gateway import PersistenceGateway

logger = get_logger("ingest.pipeline")

BENCHMARK_COLLECTION = "benchmarks"

BENCHMARK_FIELDS = [
    "sessions",
    "newUsers",
    "users",
    "pageViews",
    "avgPageViews",
    "engagementRate",
    "conversionRate",
]


def _require_link(site: Site, provider: Provider) -> str:
    ref = site.property_ref(provider)
    if not ref:
        raise CredentialError(
            CredentialErrorReason.NOT_FOUND,
            f"Site {site.id} is not linked to {provider.value}",
        )
    return ref


class IngestionService:
    """Per-tenant ingestion, monthly rollups and benchmark collection."""

    def __init__(
        self,
        credentials: CredentialStore,
        ga4: GA4Client,
        gsc: SearchConsoleClient,
        gateway: PersistenceGateway,
        documents: DocumentStore,
        cache: CacheStore,
        clock: Callable[[], datetime] = utcnow,
        window_days: int | None = None,
        top_n_limit: int | None = None,
    ):
        self.credentials = credentials
        self.ga4 = ga4
        self.gsc = gsc
        self.gateway = gateway
        self.documents = documents
        self.cache = cache
        self._clock = clock
        self.window_days = window_days or settings.ingest_window_days
        self.top_n_limit = top_n_limit or settings.top_n_limit

    def _today(self) -> date:
        return self._clock().date()

    # ── Daily Ingest ──

    async def ingest_ga4(self, site: Site, today: Optional[date] = None) -> WindowAggregates:
        return await self.gateway.ingest(
            site.id, Provider.GA4, lambda: self._produce_ga4(site, today or self._today())
        )

    async def ingest_gsc(self, site: Site, today: Optional[date] = None) -> WindowAggregates:
        return await self.gateway.ingest(
            site.id, Provider.GSC, lambda: self._produce_gsc(site, today or self._today())
        )

    async def _produce_ga4(self, site: Site, today: date) -> WindowAggregates:
        property_id = _require_link(site, Provider.GA4)
        token = await self.credentials.get_valid(site, Provider.GA4)
        window = DateWindow.trailing(self.window_days, today, self.ga4.reporting_lag_days)

        rows = await self.ga4.run_spec(token.token, property_id, window, GA4_DAILY_TRAFFIC)
        daily = aggregate_daily(rows, GA4_DAILY_TRAFFIC)

        for event_name in site.conversion_events or []:
            event_rows = await self.ga4.run_spec(
                token.token,
                property_id,
                window,
                GA4_DAILY_EVENTS,
                dimension_filter=event_name_filter(event_name),
            )
            daily = merge_event_counts(daily, event_rows)

        fetched_at = self._clock()
        return WindowAggregates(
            provider=Provider.GA4.value,
            fetched_at=fetched_at,
            period=window.to_period(),
            daily=daily,
            summary=summarize(daily, GA4_DAILY_TRAFFIC, window, fetched_at),
        )

    async def _produce_gsc(self, site: Site, today: date) -> WindowAggregates:
        site_url = _require_link(site, Provider.GSC)
        token = await self.credentials.get_valid(site, Provider.GSC)
        window = DateWindow.trailing(self.window_days, today, self.gsc.reporting_lag_days)

        rows = await self.gsc.query_spec(token.token, site_url, window, GSC_PERFORMANCE)
        daily = aggregate_daily(rows, GSC_PERFORMANCE)
        fetched_at = self._clock()

        rankings = [
            top_n_record(
                rows,
                GSC_PERFORMANCE,
                kind=kind,
                key_name=key_name,
                key_dimension=dimension,
                primary_metric="clicks",
                limit=self.top_n_limit,
                window=window,
                fetched_at=fetched_at,
            )
            for kind, key_name, dimension in (
                ("queries", "query", GSC_QUERY_DIMENSION),
                ("pages", "page", GSC_PAGE_DIMENSION),
            )
        ]
        return WindowAggregates(
            provider=Provider.GSC.value,
            fetched_at=fetched_at,
            period=window.to_period(),
            daily=daily,
            summary=summarize(daily, GSC_PERFORMANCE, window, fetched_at),
            top_n=rankings,
        )

    # ── Monthly Rollups ──

    async def monthly_rollup(self, site: Site, window: DateWindow) -> MonthlyRollup:
        """Month totals for `window`, served from the response cache when fresh."""
        key = cache_key("ga4_monthly", site.id, window.start_str, window.end_str)
        cached = self.cache.get(key)
        if cached is not None:
            return MonthlyRollup(**cached)

        property_id = _require_link(site, Provider.GA4)
        token = await self.credentials.get_valid(site, Provider.GA4)
        rows = await self.ga4.run_spec(token.token, property_id, window, GA4_MONTHLY)

        conversions = 0
        for event_name in site.conversion_events or []:
            event_rows = await self.ga4.run_spec(
                token.token,
                property_id,
                window,
                GA4_MONTHLY_EVENTS,
                dimension_filter=event_name_filter(event_name),
            )
            conversions += sum(
                safe_int(r.metric_values[0]) for r in event_rows if r.metric_values
            )

        rollup = summarize_month(rows, GA4_MONTHLY, window.year_month, conversions)
        self.cache.set(key, rollup.model_dump(), site_id=site.id)
        return rollup

    async def collect_monthly_benchmark(
        self, site: Site, today: Optional[date] = None
    ) -> Optional[MonthlyRollup]:
        """Store the previous month's rollup; None when it was already collected."""
        window = DateWindow.previous_month(today or self._today())
        if self.documents.exists(site.id, BENCHMARK_COLLECTION, window.year_month):
            logger.info(
                f"Benchmark for {window.year_month} already collected, skipping",
                extra={"site_id": site.id},
            )
            return None

        rollup = await self.monthly_rollup(site, window)
        self.documents.batch(BENCHMARK_CONTRACT).merge(
            site.id,
            window.year_month,
            {
                **rollup.to_document(),
                "siteId": site.id,
                "siteType": site.site_type,
                "collectedAt": self._clock().isoformat(),
            },
        ).commit()
        logger.info(
            f"Benchmark collected for {window.year_month}: {rollup.sessions} sessions",
            extra={"site_id": site.id},
        )
        return rollup

    def benchmark_stats(self, site_type: str, year_month: str) -> Optional[Dict[str, Any]]:
        """Sample size and avg/max/min per metric across sites of one type."""
        samples = [
            data
            for _, data in self.documents.list_by_doc_id(BENCHMARK_COLLECTION, year_month)
            if data.get("siteType") == site_type
        ]
        if not samples:
            logger.info(f"No benchmark data for site type {site_type!r} in {year_month}")
            return None

        values: Dict[str, List[float]] = defaultdict(list)
        for data in samples:
            for name in BENCHMARK_FIELDS:
                values[name].append(float(data.get(name) or 0))

        stats: Dict[str, Any] = {
            "siteType": site_type,
            "yearMonth": year_month,
            "sampleSize": len(samples),
        }
        for name in BENCHMARK_FIELDS:
            series = values[name]
            stats[name] = {
                "avg": sum(series) / len(series),
                "max": max(series),
                "min": min(series),
            }
        return stats

    async def export_row(self, site: Site, window: DateWindow) -> ExportRow:
        rollup = await self.monthly_rollup(site, window)
        return ExportRow.from_rollup(site, rollup, registered_at=self._clock())
