"""SiteInsight: Tenant Document Store.

A per-tenant document hierarchy (collection/doc_id → JSON map) on top of the
`tenant_documents` table. Writes are non-destructive deep merges collected in
a WriteBatch and committed in a single transaction.

Several jobs write into the same tenant tree (daily ingest, benchmark
collection). Each job declares a WriteContract naming the collection and the
top-level fields it owns; a write outside the contract is rejected before
anything touches the database.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from siteinsight.core.dates import utcnow
from siteinsight.core.errors import PersistenceError
from siteinsight.core.logging import get_logger
from siteinsight.core.metric_registry import GA4_DAILY_TRAFFIC, GSC_PERFORMANCE, ReportSpec
from siteinsight.database import SessionFactory
from siteinsight.models.storage_models import TenantDocument

logger = get_logger("storage.documents")


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new dict: `base` with `patch` merged in.

    Nested dicts merge recursively; any other value in `patch` replaces the
    stored one. Keys absent from `patch` are kept.
    """
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ── Write Contracts ──


@dataclass(frozen=True)
class WriteContract:
    """Collection and top-level fields one job is allowed to write."""

    job: str
    collection: str
    fields: FrozenSet[str]

    def check(self, collection: str, data: Dict[str, Any]) -> None:
        if collection != self.collection:
            raise PersistenceError(
                f"{self.job} may not write to collection {collection!r}"
            )
        undeclared = sorted(set(data) - self.fields)
        if undeclared:
            raise PersistenceError(
                f"{self.job} wrote undeclared fields to {collection}: {', '.join(undeclared)}"
            )


_RECORD_FIELDS = {"date", "sourceRowCount", "fetchedAt", "dayCount", "period", "lastFetchedAt"}


def contract_for_report(
    job: str,
    collection: str,
    spec: ReportSpec,
    extra: Iterable[str] = (),
) -> WriteContract:
    """Contract covering the daily and summary documents built from `spec`."""
    names = {m.name for m in spec.metrics}
    summary_keys = {m.summary_key for m in spec.metrics}
    return WriteContract(
        job=job,
        collection=collection,
        fields=frozenset(names | summary_keys | set(spec.breakdowns) | _RECORD_FIELDS | set(extra)),
    )


GA4_INGEST_CONTRACT = contract_for_report(
    "daily_ingest.ga4",
    "ga4_data",
    GA4_DAILY_TRAFFIC,
    extra=("conversions", "totalConversions"),
)

GSC_INGEST_CONTRACT = contract_for_report(
    "daily_ingest.gsc",
    "gsc_data",
    GSC_PERFORMANCE,
    extra=("queries", "pages"),
)

BENCHMARK_CONTRACT = WriteContract(
    job="monthly_benchmark",
    collection="benchmarks",
    fields=frozenset(
        {
            "yearMonth",
            "sessions",
            "newUsers",
            "users",
            "pageViews",
            "avgPageViews",
            "engagementRate",
            "conversions",
            "conversionRate",
            "siteId",
            "siteType",
            "collectedAt",
        }
    ),
)


# ── Store ──


@dataclass
class WriteBatch:
    """Merge-writes collected for one atomic commit."""

    store: "DocumentStore"
    contract: WriteContract
    writes: List[Tuple[str, str, str, Dict[str, Any]]] = field(default_factory=list)

    def merge(self, site_id: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self.contract.check(self.contract.collection, data)
        self.writes.append((site_id, self.contract.collection, doc_id, data))
        return self

    def commit(self, also: Optional[Callable[[Session], None]] = None) -> int:
        """Apply all writes in one transaction; `also` runs inside it."""
        return self.store.commit(self, also)


class DocumentStore:
    """Read and merge-write tenant documents."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    def batch(self, contract: WriteContract) -> WriteBatch:
        return WriteBatch(store=self, contract=contract)

    def commit(
        self,
        batch: WriteBatch,
        also: Optional[Callable[[Session], None]] = None,
    ) -> int:
        """Commit `batch`; returns the number of documents that changed."""
        changed = 0
        with self._sessions() as session:
            try:
                for site_id, collection, doc_id, data in batch.writes:
                    if self._merge_one(session, site_id, collection, doc_id, data):
                        changed += 1
                if also is not None:
                    also(session)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Batch commit failed for {batch.contract.job}: {e}")
                raise PersistenceError(f"Batch commit failed: {e}") from e

        logger.debug(
            f"{batch.contract.job}: {len(batch.writes)} writes, {changed} documents changed"
        )
        return changed

    def _merge_one(
        self,
        session: Session,
        site_id: str,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
    ) -> bool:
        doc = self._find(session, site_id, collection, doc_id)
        if doc is None:
            session.add(
                TenantDocument(
                    site_id=site_id,
                    collection=collection,
                    doc_id=doc_id,
                    data=deep_merge({}, data),
                    updated_at=utcnow(),
                )
            )
            # Later writes in the same batch must see this row
            session.flush()
            return True

        merged = deep_merge(doc.data or {}, data)
        if merged == doc.data:
            return False
        # Assign a new dict so the JSON column is marked dirty
        doc.data = merged
        doc.updated_at = utcnow()
        session.add(doc)
        session.flush()
        return True

    @staticmethod
    def _find(
        session: Session, site_id: str, collection: str, doc_id: str
    ) -> Optional[TenantDocument]:
        return session.exec(
            select(TenantDocument).where(
                TenantDocument.site_id == site_id,
                TenantDocument.collection == collection,
                TenantDocument.doc_id == doc_id,
            )
        ).first()

    # ── Reads ──

    def get(self, site_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._sessions() as session:
            doc = self._find(session, site_id, collection, doc_id)
            return dict(doc.data) if doc is not None else None

    def exists(self, site_id: str, collection: str, doc_id: str) -> bool:
        return self.get(site_id, collection, doc_id) is not None

    def list_by_doc_id(self, collection: str, doc_id: str) -> List[Tuple[str, Dict[str, Any]]]:
        """(site_id, data) for one doc_id across all tenants, e.g. benchmarks/2025-09."""
        with self._sessions() as session:
            docs = session.exec(
                select(TenantDocument).where(
                    TenantDocument.collection == collection,
                    TenantDocument.doc_id == doc_id,
                )
            ).all()
            return [(d.site_id, dict(d.data)) for d in docs]
