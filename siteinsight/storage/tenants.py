"""SiteInsight: Tenant Repository."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlmodel import select

from siteinsight.core.dates import ensure_utc
from siteinsight.database import SessionFactory
from siteinsight.models.tenant_models import IngestionStatus, Provider, Site

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class TenantRepository:
    """Read-only queries over registered sites."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    def list_all(self) -> List[Site]:
        with self._sessions() as session:
            return list(session.exec(select(Site).order_by(Site.created_at, Site.id)).all())

    def last_attempts(self, provider: Provider) -> Dict[str, Optional[datetime]]:
        with self._sessions() as session:
            rows = session.exec(
                select(IngestionStatus.site_id, IngestionStatus.last_attempted_at).where(
                    IngestionStatus.provider == provider.value
                )
            ).all()
        return {site_id: ensure_utc(attempted) for site_id, attempted in rows}

    def list_linked(self, provider: Provider) -> List[Site]:
        """Sites with both a property reference and a credential for `provider`.

        Least recently attempted first, never-attempted sites leading, so a
        run cut short by its time budget resumes with the sites it deferred.
        """
        attempts = self.last_attempts(provider)
        linked = [s for s in self.list_all() if s.is_linked(provider)]
        # Stable: ties keep registration order
        return sorted(linked, key=lambda s: attempts.get(s.id) or _NEVER)

    def list_export_ready(self) -> List[Site]:
        """Onboarded sites with a GA4 property, the monthly export population."""
        return [s for s in self.list_all() if s.setup_completed and s.ga4_property_id]
