"""
Linking Session Cleanup Service
Purges pending provider links that were abandoned, failed, or already used
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import or_

from app import db
from models import LinkingSession

logger = logging.getLogger(__name__)


class LinkingSessionCleanupService:
    """Removes LinkingSession rows that can no longer complete"""

    @staticmethod
    def purge_stale_sessions(now: Optional[datetime] = None, consumed_grace_minutes: int = 5) -> Dict[str, int]:
        """
        Delete sessions past their expiry and sessions whose state was consumed

        Consumed sessions that are still present belong to callbacks that
        failed after the state check; successful callbacks delete their own row.
        A consumed session is kept for a short grace period while its token
        exchange may still be in flight.

        Returns:
            Dictionary with cleanup counts
        """
        now = now or datetime.utcnow()
        deleted = (LinkingSession.query
                   .filter(or_(LinkingSession.expires_at <= now,
                               LinkingSession.consumed_at <= now - timedelta(minutes=consumed_grace_minutes)))
                   .delete(synchronize_session=False))
        db.session.commit()

        remaining = LinkingSession.query.count()
        logger.info(f"Purged {deleted} stale linking sessions, {remaining} pending")
        return {'deleted': deleted, 'remaining': remaining}
