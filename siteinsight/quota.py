"""SiteInsight: Monthly AI Usage Quota Reset."""

from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from siteinsight.core.dates import utcnow
from siteinsight.core.errors import PersistenceError
from siteinsight.core.logging import get_logger
from siteinsight.database import SessionFactory
from siteinsight.models.tenant_models import UserAccount

logger = get_logger("quota")

RESET_BATCH_SIZE = 500


class QuotaService:
    def __init__(
        self,
        sessions: SessionFactory,
        batch_size: int = RESET_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = sessions
        self.batch_size = batch_size
        self._clock = clock

    def reset_monthly_usage(self) -> int:
        """Zero every account's AI usage counters, committing every `batch_size` rows.

        Failures propagate: a partially applied reset must surface.
        """
        count = 0
        with self._sessions() as session:
            try:
                accounts = session.exec(select(UserAccount).order_by(UserAccount.id)).all()
                if not accounts:
                    logger.info("No user accounts to reset")
                    return 0

                now = self._clock()
                pending = 0
                for account in accounts:
                    account.ai_summary_usage = 0
                    account.ai_improvement_usage = 0
                    account.updated_at = now
                    session.add(account)
                    count += 1
                    pending += 1
                    if pending >= self.batch_size:
                        session.commit()
                        pending = 0
                if pending:
                    session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Monthly usage reset failed after {count} accounts: {e}")
                raise PersistenceError(f"Monthly usage reset failed: {e}") from e

        logger.info(f"Reset monthly AI usage for {count} accounts")
        return count
