"""SiteInsight: Aggregation Engine.

Pure transformations from provider RawRows into DailyRecord, SummaryRecord,
TopNRecord and MonthlyRollup shapes. No I/O happens here.

Two averaging policies coexist on purpose:
  - daily rates and top-N entity rates are the mean over raw rows
  - summary rates are the mean of the daily rates (mean of means)
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from siteinsight.core.dates import DateWindow
from siteinsight.core.errors import AggregationError
from siteinsight.core.logging import get_logger
from siteinsight.core.metric_registry import MetricDefinition, ReportSpec
from siteinsight.core.parsing import safe_float
from siteinsight.models.records import (
    DailyRecord,
    MonthlyRollup,
    Number,
    RankedEntity,
    RawRow,
    SummaryRecord,
    TopNRecord,
)

logger = get_logger("aggregation")


def _as_number(metric: Optional[MetricDefinition], value: float) -> Number:
    if metric is not None and metric.integer:
        return int(round(value))
    return value


def _summary_key(spec: ReportSpec, name: str) -> str:
    metric = spec.metric(name)
    if metric is not None:
        return metric.summary_key
    return f"total{name[:1].upper()}{name[1:]}"


def _check_layout(row: RawRow, spec: ReportSpec, needed: int) -> None:
    if len(row.dimension_values) < needed:
        raise AggregationError(
            f"{spec.name}: row has {len(row.dimension_values)} dimension values, "
            f"layout needs {needed}"
        )


class _Accumulator:
    """Running sums for one group of rows (a date bucket or an entity)."""

    def __init__(self, spec: ReportSpec, with_breakdowns: bool = True):
        self.spec = spec
        self.sums: Dict[str, float] = {m.name: 0.0 for m in spec.metrics}
        self.row_count = 0
        self.breakdowns: Dict[str, Dict[str, Dict[str, float]]] = (
            {key: {} for key in spec.breakdowns} if with_breakdowns else {}
        )
        self._breakdown_metrics = [
            name
            for name in spec.breakdown_metrics
            if spec.metric(name) is not None and not spec.metric(name).is_rate
        ]

    def add(self, row: RawRow) -> None:
        self.row_count += 1
        # Missing trailing metric values read as 0
        values = [
            safe_float(row.metric_values[i]) if i < len(row.metric_values) else 0.0
            for i in range(len(self.spec.metrics))
        ]
        for metric, value in zip(self.spec.metrics, values):
            self.sums[metric.name] += value

        for key, dim_index in self.spec.breakdowns.items():
            if key not in self.breakdowns:
                continue
            label = row.dimension_values[dim_index]
            slot = self.breakdowns[key].setdefault(
                label, {name: 0.0 for name in self._breakdown_metrics}
            )
            for name in self._breakdown_metrics:
                slot[name] += values[self.spec.metric_index(name)]

    def totals(self) -> Dict[str, Number]:
        return {
            m.name: _as_number(m, self.sums[m.name])
            for m in self.spec.metrics
            if not m.is_rate
        }

    def rates(self) -> Dict[str, float]:
        if self.row_count == 0:
            return {m.name: 0.0 for m in self.spec.metrics if m.is_rate}
        return {
            m.name: self.sums[m.name] / self.row_count
            for m in self.spec.metrics
            if m.is_rate
        }

    def breakdown_totals(self) -> Dict[str, Dict[str, Dict[str, Number]]]:
        return {
            key: {
                label: {
                    name: _as_number(self.spec.metric(name), value)
                    for name, value in slot.items()
                }
                for label, slot in labels.items()
            }
            for key, labels in self.breakdowns.items()
        }


# ── Daily ──


def aggregate_daily(rows: List[RawRow], spec: ReportSpec) -> List[DailyRecord]:
    """Group rows by their leading date dimension into DailyRecords.

    Records come back sorted by date. Breakdown maps are keyed by the raw
    dimension value, so identical labels merge.
    """
    needed = max([1, *(i + 1 for i in spec.breakdowns.values())])
    buckets: Dict[str, _Accumulator] = {}
    for row in rows:
        _check_layout(row, spec, needed)
        date = row.dimension_values[0]
        if date not in buckets:
            buckets[date] = _Accumulator(spec)
        buckets[date].add(row)

    records = [
        DailyRecord(
            date=date,
            totals=acc.totals(),
            rates=acc.rates(),
            breakdowns=acc.breakdown_totals(),
            source_row_count=acc.row_count,
        )
        for date, acc in sorted(buckets.items())
    ]
    logger.debug(f"{spec.name}: {len(rows)} rows → {len(records)} daily records")
    return records


def merge_event_counts(
    daily: List[DailyRecord],
    rows: List[RawRow],
    metric: str = "conversions",
) -> List[DailyRecord]:
    """Fold a (date, eventCount) report into the daily totals under `metric`.

    Counts add to any value already present, so several conversion events
    can be merged one after another. Dates without a traffic record are
    ignored.
    """
    counts: Dict[str, float] = defaultdict(float)
    for row in rows:
        if not row.dimension_values:
            raise AggregationError("Event count row has no date dimension")
        value = row.metric_values[0] if row.metric_values else None
        counts[row.dimension_values[0]] += safe_float(value)

    merged: List[DailyRecord] = []
    for record in daily:
        record = record.model_copy(deep=True)
        current = record.totals.get(metric, 0)
        record.totals[metric] = int(round(current + counts.get(record.date, 0.0)))
        merged.append(record)
    return merged


# ── Window Summary ──


def summarize(
    daily: List[DailyRecord],
    spec: ReportSpec,
    window: DateWindow,
    fetched_at: datetime,
) -> SummaryRecord:
    """Sum daily totals and average daily rates over the number of dates."""
    totals: Dict[str, float] = {}
    rate_sums: Dict[str, float] = {m.summary_key: 0.0 for m in spec.metrics if m.is_rate}

    for record in daily:
        for name, value in record.totals.items():
            key = _summary_key(spec, name)
            totals[key] = totals.get(key, 0.0) + value
        for name, value in record.rates.items():
            key = _summary_key(spec, name)
            rate_sums[key] = rate_sums.get(key, 0.0) + value

    day_count = len(daily)
    averages = {
        key: (value / day_count if day_count else 0.0) for key, value in rate_sums.items()
    }
    return SummaryRecord(
        totals={key: int(round(v)) if float(v).is_integer() else v for key, v in totals.items()},
        averages=averages,
        period=window.to_period(),
        day_count=day_count,
        last_fetched_at=fetched_at,
    )


# ── Top-N ──


def rank_entities(
    rows: List[RawRow],
    spec: ReportSpec,
    key_dimension: int,
    primary_metric: str,
    limit: int,
) -> List[RankedEntity]:
    """Group rows by one dimension and rank groups by `primary_metric`.

    The sort is stable: entities with equal primary values keep the order in
    which they first appeared in `rows`.
    """
    primary = spec.metric(primary_metric)
    if primary is None:
        raise AggregationError(f"{spec.name} has no metric {primary_metric!r}")

    groups: Dict[str, _Accumulator] = {}
    for row in rows:
        _check_layout(row, spec, key_dimension + 1)
        key = row.dimension_values[key_dimension]
        if key not in groups:
            groups[key] = _Accumulator(spec, with_breakdowns=False)
        groups[key].add(row)

    entities = [
        RankedEntity(key=key, totals=acc.totals(), rates=acc.rates(), row_count=acc.row_count)
        for key, acc in groups.items()
    ]

    def sort_value(entity: RankedEntity) -> float:
        if primary.is_rate:
            return entity.rates.get(primary_metric, 0.0)
        return entity.totals.get(primary_metric, 0)

    entities.sort(key=sort_value, reverse=True)
    return entities[:limit]


def top_n_record(
    rows: List[RawRow],
    spec: ReportSpec,
    *,
    kind: str,
    key_name: str,
    key_dimension: int,
    primary_metric: str,
    limit: int,
    window: DateWindow,
    fetched_at: datetime,
) -> TopNRecord:
    return TopNRecord(
        kind=kind,
        key_name=key_name,
        entries=rank_entities(rows, spec, key_dimension, primary_metric, limit),
        period=window.to_period(),
        last_fetched_at=fetched_at,
    )


# ── Monthly Rollup ──


def summarize_month(
    rows: List[RawRow],
    spec: ReportSpec,
    year_month: str,
    conversions: int = 0,
) -> MonthlyRollup:
    """Collapse a monthly report into one rollup with derived ratios."""
    acc = _Accumulator(spec, with_breakdowns=False)
    for row in rows:
        acc.add(row)
    totals = acc.totals()
    rates = acc.rates()

    sessions = int(totals.get("sessions", 0))
    page_views = int(totals.get("pageViews", 0))
    return MonthlyRollup(
        year_month=year_month,
        sessions=sessions,
        new_users=int(totals.get("newUsers", 0)),
        users=int(totals.get("users", 0)),
        page_views=page_views,
        avg_page_views=page_views / sessions if sessions > 0 else 0.0,
        engagement_rate=rates.get("engagementRate", 0.0),
        conversions=conversions,
        conversion_rate=conversions / sessions if sessions > 0 else 0.0,
    )
