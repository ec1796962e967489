"""SiteInsight: Persistence Gateway.

Writes one ingestion run (daily records, summary, top-N) for a tenant in a
single batch and records the run outcome in IngestionStatus.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from sqlmodel import Session, select

from siteinsight.core.dates import utcnow
from siteinsight.core.errors import PersistenceError
from siteinsight.core.logging import get_logger
from siteinsight.database import SessionFactory
from siteinsight.models.records import WindowAggregates
from siteinsight.models.tenant_models import IngestionState, IngestionStatus, Provider
from siteinsight.storage.document_store import (
    GA4_INGEST_CONTRACT,
    GSC_INGEST_CONTRACT,
    DocumentStore,
    WriteContract,
)

logger = get_logger("storage.gateway")

INGEST_CONTRACTS: Dict[str, WriteContract] = {
    Provider.GA4.value: GA4_INGEST_CONTRACT,
    Provider.GSC.value: GSC_INGEST_CONTRACT,
}

SUMMARY_DOC = "_summary"

CANCELLED_MESSAGE = "Ingestion cancelled: job time budget exhausted"


def _write_status(
    session: Session,
    site_id: str,
    provider: str,
    state: IngestionState,
    attempted_at: datetime,
    last_fetched_at: Optional[datetime] = None,
    error_message: Optional[str] = None,
) -> None:
    status = session.exec(
        select(IngestionStatus).where(
            IngestionStatus.site_id == site_id,
            IngestionStatus.provider == provider,
        )
    ).first()
    if status is None:
        status = IngestionStatus(site_id=site_id, provider=provider)
    status.status = state.value
    status.error_message = error_message
    status.last_attempted_at = attempted_at
    # An error keeps the previous fetch time so readers can show stale data
    if last_fetched_at is not None:
        status.last_fetched_at = last_fetched_at
    session.add(status)


class PersistenceGateway:
    """Idempotent upsert of WindowAggregates into the tenant document tree."""

    def __init__(
        self,
        store: DocumentStore,
        sessions: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self._sessions = sessions
        self._clock = clock

    def upsert(self, site_id: str, aggregates: WindowAggregates) -> int:
        """Merge-write every record of `aggregates` and mark the run successful.

        Documents and the success status commit in the same transaction.
        Returns the number of documents that changed.
        """
        contract = INGEST_CONTRACTS.get(aggregates.provider)
        if contract is None:
            raise PersistenceError(f"No write contract for provider {aggregates.provider!r}")

        batch = self.store.batch(contract)
        for record in aggregates.daily:
            batch.merge(site_id, record.date, record.to_document(aggregates.fetched_at))
        batch.merge(site_id, SUMMARY_DOC, aggregates.summary.to_document())
        for top in aggregates.top_n:
            batch.merge(site_id, f"_top_{top.kind}", top.to_document())

        changed = batch.commit(
            also=lambda session: _write_status(
                session,
                site_id,
                aggregates.provider,
                IngestionState.SUCCESS,
                attempted_at=aggregates.fetched_at,
                last_fetched_at=aggregates.fetched_at,
            )
        )
        logger.info(
            f"Persisted {len(aggregates.daily)} daily records for {site_id} "
            f"({changed} documents changed)",
            extra={"site_id": site_id, "provider": aggregates.provider},
        )
        return changed

    async def ingest(
        self,
        site_id: str,
        provider: Provider,
        produce: Callable[[], Awaitable[WindowAggregates]],
    ) -> WindowAggregates:
        """Run fetch + aggregate via `produce` and persist the result.

        Any failure is recorded as an error status and re-raised, including
        cancellation when the job's time budget runs out mid-tenant.
        """
        try:
            aggregates = await produce()
            self.upsert(site_id, aggregates)
        except asyncio.CancelledError:
            logger.warning(
                f"Ingestion cancelled for {site_id}",
                extra={"site_id": site_id, "provider": provider.value},
            )
            self.record_error(site_id, provider, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.error(
                f"Ingestion failed for {site_id}: {e}",
                extra={"site_id": site_id, "provider": provider.value},
            )
            self.record_error(site_id, provider, str(e) or type(e).__name__)
            raise
        return aggregates

    def record_error(self, site_id: str, provider: Provider, message: str) -> None:
        with self._sessions() as session:
            _write_status(
                session,
                site_id,
                provider.value,
                IngestionState.ERROR,
                attempted_at=self._clock(),
                error_message=message,
            )
            session.commit()

    def status(self, site_id: str, provider: Provider) -> Optional[IngestionStatus]:
        with self._sessions() as session:
            return session.exec(
                select(IngestionStatus).where(
                    IngestionStatus.site_id == site_id,
                    IngestionStatus.provider == provider.value,
                )
            ).first()
