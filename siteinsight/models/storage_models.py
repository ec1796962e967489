"""SiteInsight: Document, Cache & Operations Log Models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel, UniqueConstraint


class TenantDocument(SQLModel, table=True):
    """One document in a tenant's record tree, e.g. ga4_data/20250901.

    Unique constraint on (site_id, collection, doc_id) makes every write a
    merge into the same slot rather than an append.
    """

    __tablename__ = "tenant_documents"
    __table_args__ = (
        UniqueConstraint("site_id", "collection", "doc_id", name="uq_tenant_document"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    collection: str = Field(index=True, description="ga4_data | gsc_data | benchmarks")
    doc_id: str = Field(description="yyyyMMdd, _summary, _top_queries, ...")
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CacheEntry(SQLModel, table=True):
    """Cached provider response."""

    __tablename__ = "api_cache"

    key: str = Field(primary_key=True)
    site_id: str = Field(default="", index=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    ttl_seconds: int = Field(default=3600)


class ErrorLog(SQLModel, table=True):
    """Per-tenant failure recorded by a scheduled job."""

    __tablename__ = "error_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True, description="e.g. sheets_export_error")
    function: str = Field(default="")
    site_id: Optional[str] = Field(default=None, index=True)
    site_name: Optional[str] = Field(default=None)
    year_month: Optional[str] = Field(default=None)
    error: str = Field(default="")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExportHistory(SQLModel, table=True):
    """One monthly export run."""

    __tablename__ = "export_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(default="scheduled_export")
    year_month: str = Field(index=True)
    total_sites: int = Field(default=0)
    success_count: int = Field(default=0)
    error_count: int = Field(default=0)
    inserted: int = Field(default=0)
    updated: int = Field(default=0)
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
