"""SiteInsight: Tenant Batch Loop.

Processes tenants one at a time with a fixed pause between them to stay
inside provider rate limits. A tenant's failure is recorded in its
TenantResult and the loop moves on; nothing a single tenant raises aborts
the batch. The loop stops early only when the job's wall-clock budget runs
out, leaving the remaining tenants for the next scheduled run.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from siteinsight.config import settings
from siteinsight.core.logging import get_logger
from siteinsight.models.tenant_models import Site

logger = get_logger("scheduler.batch")

SUCCESS = "success"
ERROR = "error"
SKIPPED = "skipped"


class SkipTenant(Exception):
    """Raised by a handler when a tenant has nothing to do this run."""


@dataclass
class TenantResult:
    site_id: str
    status: str
    error: Optional[str] = None
    value: Any = None
    duration_ms: int = 0


@dataclass
class BatchSummary:
    job: str
    results: List[TenantResult] = field(default_factory=list)
    not_started: int = 0

    @property
    def total(self) -> int:
        return len(self.results) + self.not_started

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.status == SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == ERROR)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.status == SKIPPED)

    @property
    def failed_tenants(self) -> List[str]:
        return [r.site_id for r in self.results if r.status == ERROR]

    @property
    def errors(self) -> Dict[str, str]:
        return {r.site_id: r.error or "" for r in self.results if r.status == ERROR}


async def run_tenant_batch(
    job: str,
    tenants: Sequence[Site],
    handler: Callable[[Site], Awaitable[Any]],
    delay: float | None = None,
    budget_seconds: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchSummary:
    """Run `handler` for each tenant in order and collect the outcomes."""
    delay = settings.tenant_delay_seconds if delay is None else delay
    budget = settings.job_time_budget_seconds if budget_seconds is None else budget_seconds
    deadline = time.monotonic() + budget
    summary = BatchSummary(job=job)

    logger.info(f"{job}: processing {len(tenants)} tenants", extra={"job": job})

    for i, site in enumerate(tenants):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            summary.not_started = len(tenants) - i
            logger.warning(
                f"{job}: time budget exhausted, {summary.not_started} tenants deferred",
                extra={"job": job},
            )
            break

        started = time.monotonic()
        try:
            value = await asyncio.wait_for(handler(site), timeout=remaining)
            result = TenantResult(site_id=site.id, status=SUCCESS, value=value)
        except SkipTenant as e:
            result = TenantResult(site_id=site.id, status=SKIPPED, error=str(e) or None)
        except asyncio.TimeoutError:
            result = TenantResult(
                site_id=site.id, status=ERROR, error="Job time budget exhausted"
            )
        except Exception as e:
            logger.error(
                f"{job}: tenant failed: {e}",
                extra={"job": job, "site_id": site.id},
            )
            result = TenantResult(site_id=site.id, status=ERROR, error=str(e) or type(e).__name__)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        summary.results.append(result)

        if i < len(tenants) - 1 and delay > 0:
            await sleep(delay)

    logger.info(
        f"{job}: {summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.skipped} skipped, {summary.not_started} deferred",
        extra={"job": job},
    )
    return summary
