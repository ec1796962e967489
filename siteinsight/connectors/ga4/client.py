"""SiteInsight: GA4 Data API Client.

Issues runReport queries for a date window and returns RawRow lists whose
dimension/metric order matches the request.
"""

from typing import Any, Dict, List, Optional

import httpx

from siteinsight.config import settings
from siteinsight.connectors.google.client import GoogleAPIClient
from siteinsight.core.dates import DateWindow
from siteinsight.core.logging import get_logger
from siteinsight.core.metric_registry import ReportSpec
from siteinsight.core.parsing import safe_int
from siteinsight.models.records import RawRow

logger = get_logger("ga4.client")

PAGE_SIZE = 10000
MAX_PAGES = 20


def event_name_filter(event_name: str) -> Dict[str, Any]:
    """dimensionFilter restricting a report to one event name."""
    return {
        "filter": {
            "fieldName": "eventName",
            "stringFilter": {"value": event_name},
        }
    }


def page_path_prefix_filter(prefix: str) -> Dict[str, Any]:
    """dimensionFilter restricting a report to page paths under `prefix`."""
    return {
        "filter": {
            "fieldName": "pagePath",
            "stringFilter": {"matchType": "BEGINS_WITH", "value": prefix},
        }
    }


def _parse_row(row: Dict[str, Any]) -> RawRow:
    dims = [
        str(d.get("value", "")) if isinstance(d, dict) else ""
        for d in row.get("dimensionValues") or []
    ]
    metrics = [
        m.get("value") if isinstance(m, dict) else None
        for m in row.get("metricValues") or []
    ]
    return RawRow(dimension_values=dims, metric_values=metrics)


class GA4Client(GoogleAPIClient):
    """Async client for the GA4 Data API."""

    provider = "ga4"
    reporting_lag_days = 0

    def __init__(
        self,
        base_url: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float | None = None,
    ):
        super().__init__(base_url or settings.ga4_base_url, http_client, timeout)

    async def run_report(
        self,
        token: str,
        property_id: str,
        window: DateWindow,
        dimensions: List[str],
        metrics: List[str],
        dimension_filter: Optional[Dict[str, Any]] = None,
        order_bys: Optional[List[Dict[str, Any]]] = None,
    ) -> List[RawRow]:
        """Run one report and return every row across pages."""
        url = f"{self.base_url}/properties/{property_id}:runReport"
        body: Dict[str, Any] = {
            "dateRanges": [{"startDate": window.start_str, "endDate": window.end_str}],
            "dimensions": [{"name": d} for d in dimensions],
            "metrics": [{"name": m} for m in metrics],
            "limit": PAGE_SIZE,
        }
        if dimension_filter:
            body["dimensionFilter"] = dimension_filter
        if order_bys:
            body["orderBys"] = order_bys

        rows: List[RawRow] = []
        offset = 0
        for _ in range(MAX_PAGES):
            body["offset"] = offset
            data = await self._post_json(url, token, body)
            page = [_parse_row(r) for r in data.get("rows") or [] if isinstance(r, dict)]
            rows.extend(page)
            offset += len(page)
            if not page or offset >= safe_int(data.get("rowCount")):
                break

        logger.info(
            f"Fetched {len(rows)} GA4 rows for property {property_id} "
            f"({window.start_str} → {window.end_str})",
            extra={"provider": self.provider},
        )
        return rows

    async def run_spec(
        self,
        token: str,
        property_id: str,
        window: DateWindow,
        spec: ReportSpec,
        dimension_filter: Optional[Dict[str, Any]] = None,
    ) -> List[RawRow]:
        """Run the report described by `spec`, ordered by its leading dimension."""
        order_bys = None
        if spec.dimensions:
            order_bys = [{"dimension": {"dimensionName": spec.dimensions[0]}, "desc": False}]
        return await self.run_report(
            token,
            property_id,
            window,
            list(spec.dimensions),
            spec.metric_api_names,
            dimension_filter=dimension_filter,
            order_bys=order_bys,
        )
