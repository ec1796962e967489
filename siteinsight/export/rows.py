"""SiteInsight: Spreadsheet Export Rows.

One row per (site URL, year-month) in a fixed 14-column layout A..N:

    A registeredAt   B siteName   C siteUrl    D siteType   E businessType
    F yearMonth      G sessions   H newUsers   I users      J pageViews
    K avgPageViews   L engagementRate (%)      M conversions
    N conversionRate (%)
"""

from datetime import datetime
from typing import Any, List, Tuple

from pydantic import BaseModel

from siteinsight.models.records import MonthlyRollup
from siteinsight.models.tenant_models import Site

COLUMN_COUNT = 14
URL_COLUMN = 2  # C
YEAR_MONTH_COLUMN = 5  # F

HEADER = [
    "registeredAt",
    "siteName",
    "siteUrl",
    "siteType",
    "businessType",
    "yearMonth",
    "sessions",
    "newUsers",
    "users",
    "pageViews",
    "avgPageViews",
    "engagementRate",
    "conversions",
    "conversionRate",
]

DEFAULT_CATEGORY = "Other"


class ExportRow(BaseModel):
    registered_at: str
    site_name: str
    site_url: str
    site_type: str = DEFAULT_CATEGORY
    business_type: str = DEFAULT_CATEGORY
    year_month: str
    sessions: int = 0
    new_users: int = 0
    users: int = 0
    page_views: int = 0
    avg_page_views: float = 0.0
    engagement_rate_pct: float = 0.0
    conversions: int = 0
    conversion_rate_pct: float = 0.0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.site_url, self.year_month)

    def to_values(self) -> List[Any]:
        return [
            self.registered_at,
            self.site_name,
            self.site_url,
            self.site_type,
            self.business_type,
            self.year_month,
            self.sessions,
            self.new_users,
            self.users,
            self.page_views,
            self.avg_page_views,
            self.engagement_rate_pct,
            self.conversions,
            self.conversion_rate_pct,
        ]

    @classmethod
    def from_rollup(cls, site: Site, rollup: MonthlyRollup, registered_at: datetime) -> "ExportRow":
        """Build the row for one site-month; ratios become 2-decimal percentages."""
        return cls(
            registered_at=registered_at.isoformat(),
            site_name=site.name,
            site_url=site.url,
            site_type=site.site_type or DEFAULT_CATEGORY,
            business_type=site.business_type or DEFAULT_CATEGORY,
            year_month=rollup.year_month,
            sessions=rollup.sessions,
            new_users=rollup.new_users,
            users=rollup.users,
            page_views=rollup.page_views,
            avg_page_views=round(rollup.avg_page_views, 2),
            engagement_rate_pct=round(rollup.engagement_rate * 100, 2),
            conversions=rollup.conversions,
            conversion_rate_pct=round(rollup.conversion_rate * 100, 2),
        )
