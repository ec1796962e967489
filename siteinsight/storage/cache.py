"""SiteInsight: Provider Response Cache.

Short-lived cache of provider-derived payloads in the `api_cache` table.
Entries past their TTL read as misses; the cache cleanup job deletes entries
older than the retention window.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete
from sqlmodel import select

from siteinsight.config import settings
from siteinsight.core.dates import ensure_utc, utcnow
from siteinsight.core.logging import get_logger
from siteinsight.database import SessionFactory
from siteinsight.models.storage_models import CacheEntry

logger = get_logger("storage.cache")


def cache_key(kind: str, site_id: str, start_date: str, end_date: str) -> str:
    return f"{kind}_{site_id}_{start_date}_{end_date}"


class CacheStore:
    def __init__(
        self,
        sessions: SessionFactory,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self.ttl_seconds = settings.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._sessions() as session:
            entry = session.get(CacheEntry, key)
        if entry is None:
            logger.debug(f"Cache miss: {key}")
            return None

        age = (self._clock() - ensure_utc(entry.created_at)).total_seconds()
        if age >= entry.ttl_seconds:
            logger.debug(f"Cache expired: {key} (age: {int(age)}s)")
            return None
        logger.debug(f"Cache hit: {key} (age: {int(age)}s)")
        return dict(entry.data)

    def set(self, key: str, data: Dict[str, Any], site_id: str = "") -> None:
        with self._sessions() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                entry = CacheEntry(key=key)
            entry.site_id = site_id
            entry.data = dict(data)
            entry.created_at = self._clock()
            entry.ttl_seconds = self.ttl_seconds
            session.add(entry)
            session.commit()
        logger.debug(f"Cache set: {key}")

    def cleanup_older_than(self, hours: int | None = None) -> int:
        """Delete entries created more than `hours` ago; returns the count."""
        hours = settings.cache_retention_hours if hours is None else hours
        cutoff = self._clock() - timedelta(hours=hours)
        with self._sessions() as session:
            stale = session.exec(
                select(CacheEntry.key).where(CacheEntry.created_at < cutoff)
            ).all()
            if not stale:
                logger.info("No old cache entries to delete")
                return 0
            session.exec(delete(CacheEntry).where(CacheEntry.key.in_(stale)))
            session.commit()
        logger.info(f"Deleted {len(stale)} old cache entries")
        return len(stale)
