"""SiteInsight: Aggregation Record Schemas.

Pydantic shapes produced by the aggregation engine and consumed by the
persistence and export gateways. Dashboard/AI/PDF consumers read the stored
documents read-only.
"""

from datetime import datetime
from typing import Any, Dict, List, Union

from pydantic import BaseModel, Field

Number = Union[int, float]


class RawRow(BaseModel):
    """One provider result row, in the column order of its ReportSpec."""

    dimension_values: List[str] = []
    metric_values: List[Any] = []


class AccessToken(BaseModel):
    """A decrypted access token guaranteed valid for immediate use."""

    credential_id: str
    token: str = Field(repr=False)
    expires_at: datetime


class DailyRecord(BaseModel):
    """Aggregated metrics for one tenant and date."""

    date: str
    totals: Dict[str, Number] = {}
    rates: Dict[str, float] = {}
    breakdowns: Dict[str, Dict[str, Dict[str, Number]]] = {}
    source_row_count: int = 0

    def to_document(self, fetched_at: datetime) -> Dict[str, Any]:
        return {
            "date": self.date,
            **self.totals,
            **self.rates,
            **self.breakdowns,
            "sourceRowCount": self.source_row_count,
            "fetchedAt": fetched_at.isoformat(),
        }


class SummaryRecord(BaseModel):
    """Window-level totals and mean-of-daily rates."""

    totals: Dict[str, Number] = {}
    averages: Dict[str, float] = {}
    period: Dict[str, str] = {}
    day_count: int = 0
    last_fetched_at: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            **self.totals,
            **self.averages,
            "dayCount": self.day_count,
            "period": dict(self.period),
            "lastFetchedAt": self.last_fetched_at.isoformat(),
        }


class RankedEntity(BaseModel):
    """One entity (query or page) in a top-N ranking."""

    key: str
    totals: Dict[str, Number] = {}
    rates: Dict[str, float] = {}
    row_count: int = 0

    def to_document(self, key_name: str) -> Dict[str, Any]:
        return {key_name: self.key, **self.totals, **self.rates, "count": self.row_count}


class TopNRecord(BaseModel):
    """Ranked entities for a window, sorted by the primary metric."""

    kind: str  # "queries" | "pages"
    key_name: str  # "query" | "page"
    entries: List[RankedEntity] = []
    period: Dict[str, str] = {}
    last_fetched_at: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            self.kind: [e.to_document(self.key_name) for e in self.entries],
            "period": dict(self.period),
            "lastFetchedAt": self.last_fetched_at.isoformat(),
        }


class WindowAggregates(BaseModel):
    """Everything one ingestion run writes for one tenant and provider."""

    provider: str
    fetched_at: datetime
    period: Dict[str, str] = {}
    daily: List[DailyRecord] = []
    summary: SummaryRecord
    top_n: List[TopNRecord] = []


class MonthlyRollup(BaseModel):
    """Previous-month metrics used by the benchmark and export jobs."""

    year_month: str  # yyyy-MM
    sessions: int = 0
    new_users: int = 0
    users: int = 0
    page_views: int = 0
    avg_page_views: float = 0.0
    engagement_rate: float = 0.0  # fraction 0..1
    conversions: int = 0
    conversion_rate: float = 0.0  # fraction 0..1

    def to_document(self) -> Dict[str, Any]:
        return {
            "yearMonth": self.year_month,
            "sessions": self.sessions,
            "newUsers": self.new_users,
            "users": self.users,
            "pageViews": self.page_views,
            "avgPageViews": self.avg_page_views,
            "engagementRate": self.engagement_rate,
            "conversions": self.conversions,
            "conversionRate": self.conversion_rate,
        }
