"""SiteInsight: Search Console API Client.

Search Analytics returns `keys` plus fixed metric fields per row; they are
reshaped here into RawRow so aggregation sees the same layout as GA4.
Search Console data for the most recent days is incomplete, so callers
shift the window end back by `reporting_lag_days`.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from siteinsight.config import settings
from siteinsight.connectors.google.client import GoogleAPIClient
from siteinsight.core.dates import DateWindow
from siteinsight.core.logging import get_logger
from siteinsight.core.metric_registry import ReportSpec
from siteinsight.models.records import RawRow

logger = get_logger("gsc.client")

ROW_LIMIT = 25000
MAX_PAGES = 10


def _parse_row(row: Dict[str, Any], metric_names: List[str]) -> RawRow:
    keys = [str(k) for k in row.get("keys") or []]
    return RawRow(
        dimension_values=keys,
        metric_values=[row.get(name) for name in metric_names],
    )


class SearchConsoleClient(GoogleAPIClient):
    """Async client for the Search Console Search Analytics API."""

    provider = "gsc"

    def __init__(
        self,
        base_url: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float | None = None,
        lag_days: int | None = None,
    ):
        super().__init__(base_url or settings.gsc_base_url, http_client, timeout)
        self.reporting_lag_days = settings.gsc_lag_days if lag_days is None else lag_days

    async def query(
        self,
        token: str,
        site_url: str,
        window: DateWindow,
        dimensions: List[str],
        metric_names: List[str] | None = None,
        row_limit: int = ROW_LIMIT,
        data_state: str = "final",
    ) -> List[RawRow]:
        """Run a Search Analytics query, following startRow pagination."""
        metric_names = metric_names or ["clicks", "impressions", "ctr", "position"]
        url = f"{self.base_url}/sites/{quote(site_url, safe='')}/searchAnalytics/query"
        body: Dict[str, Any] = {
            "startDate": window.start_str,
            "endDate": window.end_str,
            "dimensions": list(dimensions),
            "rowLimit": row_limit,
            "dataState": data_state,
        }

        rows: List[RawRow] = []
        for page in range(MAX_PAGES):
            body["startRow"] = page * row_limit
            data = await self._post_json(url, token, body)
            batch = data.get("rows") or []
            rows.extend(_parse_row(r, metric_names) for r in batch if isinstance(r, dict))
            if len(batch) < row_limit:
                break

        logger.info(
            f"Fetched {len(rows)} GSC rows for {site_url} "
            f"({window.start_str} → {window.end_str})",
            extra={"provider": self.provider},
        )
        return rows

    async def query_spec(
        self,
        token: str,
        site_url: str,
        window: DateWindow,
        spec: ReportSpec,
    ) -> List[RawRow]:
        return await self.query(
            token, site_url, window, list(spec.dimensions), spec.metric_api_names
        )
