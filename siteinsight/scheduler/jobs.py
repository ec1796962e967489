"""SiteInsight: Scheduler Jobs.

Five APScheduler cron jobs, all in the configured timezone:

  daily_ingest          daily 02:00    tenant failures counted, batch continues
  monthly_benchmark     day 1 01:00    tenant failures counted
  monthly_quota_reset   day 1 00:00    any failure propagates
  cache_cleanup         daily 03:00    errors logged and swallowed
  monthly_export        day 1 04:00    tenant failures written to error_logs
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from siteinsight.config import settings
from siteinsight.core.dates import DateWindow, utcnow
from siteinsight.core.errors import ExportError
from siteinsight.core.logging import get_logger
from siteinsight.database import SessionFactory
from siteinsight.export.sheets import SheetsExportGateway, UpsertResult
from siteinsight.ingest.pipeline import IngestionService
from siteinsight.models.storage_models import ErrorLog, ExportHistory
from siteinsight.models.tenant_models import Provider, Site
from siteinsight.quota import QuotaService
from siteinsight.scheduler.batch import SUCCESS, BatchSummary, SkipTenant, run_tenant_batch
from siteinsight.storage.cache import CacheStore
from siteinsight.storage.tenants import TenantRepository

logger = get_logger("scheduler")

scheduler: Optional[AsyncIOScheduler] = None

EXPORT_ERROR_TYPE = "sheets_export_error"


@dataclass
class ExportRun:
    year_month: str
    summary: BatchSummary
    upsert: UpsertResult = field(default_factory=UpsertResult)


class ScheduledJobs:
    """Job bodies; each method is one scheduled invocation."""

    def __init__(
        self,
        tenants: TenantRepository,
        ingestion: IngestionService,
        quota: QuotaService,
        cache: CacheStore,
        sessions: SessionFactory,
        exporter: Optional[SheetsExportGateway] = None,
        clock: Callable[[], datetime] = utcnow,
        delay: float | None = None,
        budget_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tenants = tenants
        self.ingestion = ingestion
        self.quota = quota
        self.cache = cache
        self.exporter = exporter
        self._sessions = sessions
        self._clock = clock
        self.delay = delay
        self.budget_seconds = (
            settings.job_time_budget_seconds if budget_seconds is None else budget_seconds
        )
        self._sleep = sleep

    def _today(self) -> date:
        return self._clock().date()

    async def _batch(self, job, tenants, handler, budget: float | None = None) -> BatchSummary:
        return await run_tenant_batch(
            job,
            tenants,
            handler,
            delay=self.delay,
            budget_seconds=self.budget_seconds if budget is None else budget,
            sleep=self._sleep,
        )

    # ── Daily Ingest ──

    async def daily_ingest(self) -> Dict[str, BatchSummary]:
        """Trailing-window ingest for every linked tenant, GA4 then Search Console.

        GA4 may use at most half the budget; Search Console gets the rest, so
        a long GA4 batch never starves it.
        """
        started = time.monotonic()
        today = self._today()
        summaries: Dict[str, BatchSummary] = {}

        summaries[Provider.GA4.value] = await self._batch(
            "daily_ingest.ga4",
            self.tenants.list_linked(Provider.GA4),
            lambda site: self.ingestion.ingest_ga4(site, today),
            budget=self.budget_seconds / 2,
        )
        remaining = max(self.budget_seconds - (time.monotonic() - started), 0.0)
        summaries[Provider.GSC.value] = await self._batch(
            "daily_ingest.gsc",
            self.tenants.list_linked(Provider.GSC),
            lambda site: self.ingestion.ingest_gsc(site, today),
            budget=remaining,
        )
        return summaries

    # ── Monthly Benchmark ──

    async def monthly_benchmark(self) -> BatchSummary:
        today = self._today()

        async def collect(site: Site):
            rollup = await self.ingestion.collect_monthly_benchmark(site, today)
            if rollup is None:
                raise SkipTenant("already collected")
            return rollup

        return await self._batch(
            "monthly_benchmark", self.tenants.list_linked(Provider.GA4), collect
        )

    # ── Quota Reset ──

    async def monthly_quota_reset(self) -> int:
        try:
            return self.quota.reset_monthly_usage()
        except Exception as e:
            logger.error(f"Monthly quota reset failed: {e}", extra={"job": "monthly_quota_reset"})
            raise

    # ── Cache Cleanup ──

    async def cache_cleanup(self) -> int:
        try:
            return self.cache.cleanup_older_than(settings.cache_retention_hours)
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}", extra={"job": "cache_cleanup"})
            return 0

    # ── Monthly Export ──

    async def monthly_export(self) -> ExportRun:
        """Push the previous month's rollup of every onboarded site to the sheet."""
        window = DateWindow.previous_month(self._today())
        sites = self.tenants.list_export_ready()
        by_id = {s.id: s for s in sites}
        logger.info(
            f"Monthly export for {window.year_month}: {len(sites)} sites",
            extra={"job": "monthly_export"},
        )

        summary = await self._batch(
            "monthly_export", sites, lambda site: self.ingestion.export_row(site, window)
        )
        self._log_tenant_errors(summary, by_id, window.year_month)

        run = ExportRun(year_month=window.year_month, summary=summary)
        rows = [r.value for r in summary.results if r.status == SUCCESS]
        if rows:
            try:
                if self.exporter is None:
                    raise ExportError("Spreadsheet export is not configured")
                run.upsert = await self.exporter.upsert_rows(rows)
            except ExportError as e:
                self._write_error_log(ErrorLog(
                    type=EXPORT_ERROR_TYPE,
                    function="monthly_export",
                    year_month=window.year_month,
                    error=str(e),
                ))
                raise
        else:
            logger.warning("No rows to export", extra={"job": "monthly_export"})

        self._write_history(run, total_sites=len(sites))
        return run

    def _log_tenant_errors(
        self, summary: BatchSummary, sites: Dict[str, Site], year_month: str
    ) -> None:
        for site_id, message in summary.errors.items():
            site = sites.get(site_id)
            self._write_error_log(ErrorLog(
                type=EXPORT_ERROR_TYPE,
                function="monthly_export",
                site_id=site_id,
                site_name=site.name if site else None,
                year_month=year_month,
                error=message,
            ))

    def _write_error_log(self, entry: ErrorLog) -> None:
        with self._sessions() as session:
            session.add(entry)
            session.commit()

    def _write_history(self, run: ExportRun, total_sites: int) -> None:
        with self._sessions() as session:
            session.add(ExportHistory(
                year_month=run.year_month,
                total_sites=total_sites,
                success_count=run.summary.succeeded,
                error_count=run.summary.failed,
                inserted=run.upsert.inserted,
                updated=run.upsert.updated,
                errors=[
                    {"siteId": site_id, "error": message}
                    for site_id, message in run.summary.errors.items()
                ],
            ))
            session.commit()


# ── Scheduler Lifecycle ──


def _logged(job_id: str, fn: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
    async def run():
        logger.info(f"Scheduled job {job_id} starting...", extra={"job": job_id})
        started = time.monotonic()
        try:
            return await fn()
        except Exception as e:
            logger.error(f"Scheduled job {job_id} failed: {e}", extra={"job": job_id})
            raise
        finally:
            logger.info(
                f"Scheduled job {job_id} finished",
                extra={"job": job_id, "duration_ms": int((time.monotonic() - started) * 1000)},
            )

    return run


def register_jobs(target: AsyncIOScheduler, jobs: ScheduledJobs, timezone: str | None = None) -> None:
    """Add the five cron jobs to `target`."""
    tz = timezone or settings.scheduler_timezone
    schedule = [
        ("daily_ingest", jobs.daily_ingest, {"hour": settings.daily_ingest_hour}),
        ("monthly_benchmark", jobs.monthly_benchmark, {"day": 1, "hour": settings.benchmark_hour}),
        ("monthly_quota_reset", jobs.monthly_quota_reset, {"day": 1, "hour": settings.quota_reset_hour}),
        ("cache_cleanup", jobs.cache_cleanup, {"hour": settings.cache_cleanup_hour}),
        ("monthly_export", jobs.monthly_export, {"day": 1, "hour": settings.export_hour}),
    ]
    for job_id, fn, fields in schedule:
        target.add_job(
            _logged(job_id, fn),
            CronTrigger(minute=0, timezone=tz, **fields),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=1,
        )


def start_scheduler(jobs: ScheduledJobs) -> Optional[AsyncIOScheduler]:
    """Configure and start the scheduler."""
    global scheduler
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return None

    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
    register_jobs(scheduler, jobs)
    scheduler.start()
    logger.info(
        f"Scheduler started with {len(scheduler.get_jobs())} jobs "
        f"({settings.scheduler_timezone})"
    )
    return scheduler


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
