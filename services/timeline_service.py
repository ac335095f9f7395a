"""
Unified timeline queries across all of a patient's linked providers
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Optional

from flask import current_app
from sqlalchemy import func

from emr.parser import parse_fhir_datetime
from models import LinkedProvider, UnifiedTimelineEntry, TIMELINE_CATEGORIES

logger = logging.getLogger(__name__)

CATEGORY_LABELS = OrderedDict([
    ('lab', 'Lab Results'),
    ('vital', 'Vital Signs'),
    ('medication', 'Medications'),
    ('allergy', 'Allergies'),
    ('immunization', 'Immunizations'),
    ('procedure', 'Procedures'),
    ('encounter', 'Encounters'),
])


class TimelineService:
    """Filters, paginates and groups UnifiedTimelineEntry rows for one user"""

    def parse_query_args(self, args) -> Dict:
        """
        Validate timeline query-string arguments

        Raises:
            ValueError: Unknown category, malformed date or non-numeric paging values
        """
        default_limit = current_app.config.get('TIMELINE_DEFAULT_LIMIT', 50)
        max_limit = current_app.config.get('TIMELINE_MAX_LIMIT', 200)

        category = args.get('category') or None
        if category and category not in TIMELINE_CATEGORIES:
            raise ValueError(f"Unknown category '{category}'")

        since = None
        if args.get('since'):
            since = parse_fhir_datetime(args['since'])
            if since is None:
                raise ValueError("since must be an ISO-8601 date")

        provider_id = None
        if args.get('provider'):
            try:
                provider_id = int(args['provider'])
            except ValueError:
                raise ValueError("provider must be an integer id")

        try:
            limit = int(args.get('limit', default_limit))
            offset = int(args.get('offset', 0))
        except ValueError:
            raise ValueError("limit and offset must be integers")

        return {
            'category': category,
            'provider_id': provider_id,
            'since': since,
            'search': (args.get('search') or '').strip() or None,
            'limit': max(1, min(limit, max_limit)),
            'offset': max(0, offset),
        }

    def query_timeline(self, user_id: int, category: Optional[str] = None, provider_id: Optional[int] = None,
                       since: Optional[datetime] = None, search: Optional[str] = None,
                       limit: int = 50, offset: int = 0) -> Dict:
        """
        Page through a user's timeline, newest clinical event first

        Ordering is (effective_date DESC, id DESC) so pages never overlap.
        """
        base = UnifiedTimelineEntry.query.filter(UnifiedTimelineEntry.user_id == user_id)
        if provider_id is not None:
            base = base.filter(UnifiedTimelineEntry.linked_provider_id == provider_id)
        if since is not None:
            base = base.filter(UnifiedTimelineEntry.effective_date >= since)
        if search:
            pattern = search.lower().replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
            base = base.filter(UnifiedTimelineEntry.search_terms.ilike(f"%{pattern}%", escape='\\'))

        # Category counts reflect every other filter, so the UI can switch tabs
        counts = dict(
            base.with_entities(UnifiedTimelineEntry.category, func.count(UnifiedTimelineEntry.id))
            .group_by(UnifiedTimelineEntry.category)
            .all()
        )

        filtered = base
        if category:
            filtered = filtered.filter(UnifiedTimelineEntry.category == category)

        total = filtered.count()
        entries = (filtered
                   .order_by(UnifiedTimelineEntry.effective_date.desc(), UnifiedTimelineEntry.id.desc())
                   .offset(offset)
                   .limit(limit)
                   .all())

        timeline = [entry.to_dict() for entry in entries]
        grouped = OrderedDict()
        for item, entry in zip(timeline, entries):
            grouped.setdefault(entry.effective_date.strftime('%Y-%m-%d'), []).append(item)

        providers = (LinkedProvider.query
                     .filter_by(user_id=user_id, status='active')
                     .order_by(LinkedProvider.organization_name)
                     .all())

        return {
            'timeline': timeline,
            'groupedByDate': grouped,
            'providers': [
                {'id': p.id, 'organizationName': p.organization_name, 'lastSyncAt': p.last_sync_at.isoformat()
                 if p.last_sync_at else None}
                for p in providers
            ],
            'pagination': {
                'total': total,
                'limit': limit,
                'offset': offset,
                'hasMore': offset + len(timeline) < total,
            },
            'categories': [
                {'key': key, 'label': label, 'count': counts.get(key, 0)}
                for key, label in CATEGORY_LABELS.items()
            ],
        }

    def delete_entries_for_provider(self, provider_id: int) -> int:
        """Remove every timeline entry imported from a provider (caller commits)"""
        deleted = (UnifiedTimelineEntry.query
                   .filter_by(linked_provider_id=provider_id)
                   .delete(synchronize_session=False))
        logger.info(f"Deleted {deleted} timeline entries for provider {provider_id}")
        return deleted


# Global instance
timeline_service = TimelineService()
