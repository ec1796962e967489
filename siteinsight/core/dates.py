"""SiteInsight: Date windows for provider queries."""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive date range requested from a provider."""

    start: date
    end: date

    @classmethod
    def trailing(cls, days: int, today: date, lag_days: int = 0) -> "DateWindow":
        """Window of `days` ending `lag_days` before today.

        Providers with a reporting lag return incomplete data for the most
        recent days, so the end date is shifted back before querying.
        """
        end = today - timedelta(days=lag_days)
        return cls(start=end - timedelta(days=days), end=end)

    @classmethod
    def previous_month(cls, today: date) -> "DateWindow":
        """The full calendar month before `today`."""
        end = today.replace(day=1) - timedelta(days=1)
        return cls(start=end.replace(day=1), end=end)

    @property
    def start_str(self) -> str:
        return self.start.strftime("%Y-%m-%d")

    @property
    def end_str(self) -> str:
        return self.end.strftime("%Y-%m-%d")

    @property
    def year_month(self) -> str:
        """yyyy-MM of the window start."""
        return self.start.strftime("%Y-%m")

    def to_period(self) -> Dict[str, str]:
        return {"startDate": self.start_str, "endDate": self.end_str}
