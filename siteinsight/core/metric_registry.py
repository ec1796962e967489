"""SiteInsight: Unified Metric & Report Registry.

Defines the canonical metrics requested from each provider and the report
layouts built from them. A ReportSpec is the single source of truth for
column order: the connector sends its dimensions/metrics in this order and
the aggregation engine reads row values by the same indices.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


class MetricType(str, Enum):
    """How a metric is combined across rows."""

    ADDITIVE = "additive"  # Counts and totals: summed
    RATE = "rate"  # Rates, averages, positions: averaged


class MetricDefinition:
    """Describes a single provider metric."""

    def __init__(
        self,
        name: str,
        api_name: str,
        metric_type: MetricType,
        integer: bool = False,
        summary_key: str = "",
        description: str = "",
    ):
        self.name = name
        self.api_name = api_name
        self.metric_type = metric_type
        self.integer = integer
        self.summary_key = summary_key or name
        self.description = description

    @property
    def is_rate(self) -> bool:
        return self.metric_type == MetricType.RATE

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


@dataclass(frozen=True)
class ReportSpec:
    """Column layout of one provider report.

    `breakdowns` maps an output key (e.g. "byDevice") to the index of the
    dimension whose values key that nested map.
    """

    name: str
    provider: str
    dimensions: Tuple[str, ...]
    metrics: Tuple[MetricDefinition, ...]
    breakdowns: Dict[str, int] = field(default_factory=dict)
    breakdown_metrics: Tuple[str, ...] = ()

    def metric(self, name: str) -> Optional[MetricDefinition]:
        for m in self.metrics:
            if m.name == name:
                return m
        return None

    def metric_index(self, name: str) -> int:
        for i, m in enumerate(self.metrics):
            if m.name == name:
                return i
        raise KeyError(f"{self.name} has no metric {name!r}")

    @property
    def metric_api_names(self) -> list[str]:
        return [m.api_name for m in self.metrics]


# ─────────────────────────────────────────────
# GA4 METRICS
# ─────────────────────────────────────────────

GA4_METRICS: Dict[str, MetricDefinition] = {
    "sessions": MetricDefinition(
        "sessions", "sessions", MetricType.ADDITIVE, True, "totalSessions", "Sessions"
    ),
    "users": MetricDefinition(
        "users", "activeUsers", MetricType.ADDITIVE, True, "totalUsers", "Active users"
    ),
    "totalUsers": MetricDefinition(
        "users", "totalUsers", MetricType.ADDITIVE, True, "totalUsers", "Total users"
    ),
    "newUsers": MetricDefinition(
        "newUsers", "newUsers", MetricType.ADDITIVE, True, "totalNewUsers", "New users"
    ),
    "pageViews": MetricDefinition(
        "pageViews", "screenPageViews", MetricType.ADDITIVE, True, "totalPageViews"
    ),
    "engagementRate": MetricDefinition(
        "engagementRate", "engagementRate", MetricType.RATE, False, "avgEngagementRate"
    ),
    "bounceRate": MetricDefinition(
        "bounceRate", "bounceRate", MetricType.RATE, False, "avgBounceRate"
    ),
    "avgSessionDuration": MetricDefinition(
        "avgSessionDuration",
        "averageSessionDuration",
        MetricType.RATE,
        False,
        "avgSessionDuration",
        "Seconds",
    ),
    "eventCount": MetricDefinition(
        "eventCount", "eventCount", MetricType.ADDITIVE, True, "totalEventCount"
    ),
}


# ─────────────────────────────────────────────
# SEARCH CONSOLE METRICS
# ─────────────────────────────────────────────

GSC_METRICS: Dict[str, MetricDefinition] = {
    "clicks": MetricDefinition(
        "clicks", "clicks", MetricType.ADDITIVE, True, "totalClicks"
    ),
    "impressions": MetricDefinition(
        "impressions", "impressions", MetricType.ADDITIVE, True, "totalImpressions"
    ),
    "ctr": MetricDefinition("ctr", "ctr", MetricType.RATE, False, "avgCtr"),
    "position": MetricDefinition(
        "position", "position", MetricType.RATE, False, "avgPosition"
    ),
}


# ─────────────────────────────────────────────
# REPORTS
# ─────────────────────────────────────────────

GA4_DAILY_TRAFFIC = ReportSpec(
    name="ga4_daily_traffic",
    provider="ga4",
    dimensions=("date", "deviceCategory", "sessionDefaultChannelGroup"),
    metrics=(
        GA4_METRICS["sessions"],
        GA4_METRICS["users"],
        GA4_METRICS["pageViews"],
        GA4_METRICS["engagementRate"],
        GA4_METRICS["bounceRate"],
        GA4_METRICS["avgSessionDuration"],
    ),
    breakdowns={"byDevice": 1, "byChannel": 2},
    breakdown_metrics=("sessions", "users"),
)

GA4_DAILY_EVENTS = ReportSpec(
    name="ga4_daily_events",
    provider="ga4",
    dimensions=("date",),
    metrics=(GA4_METRICS["eventCount"],),
)

GA4_MONTHLY = ReportSpec(
    name="ga4_monthly",
    provider="ga4",
    dimensions=("yearMonth",),
    metrics=(
        GA4_METRICS["sessions"],
        GA4_METRICS["newUsers"],
        GA4_METRICS["totalUsers"],
        GA4_METRICS["pageViews"],
        GA4_METRICS["engagementRate"],
    ),
)

GA4_MONTHLY_EVENTS = ReportSpec(
    name="ga4_monthly_events",
    provider="ga4",
    dimensions=("yearMonth",),
    metrics=(GA4_METRICS["eventCount"],),
)

GSC_PERFORMANCE = ReportSpec(
    name="gsc_performance",
    provider="gsc",
    dimensions=("date", "query", "page", "device"),
    metrics=(
        GSC_METRICS["clicks"],
        GSC_METRICS["impressions"],
        GSC_METRICS["ctr"],
        GSC_METRICS["position"],
    ),
    breakdowns={"byDevice": 3},
    breakdown_metrics=("clicks", "impressions"),
)

GSC_QUERY_DIMENSION = 1
GSC_PAGE_DIMENSION = 2
