"""
Asynchronous Processing Service
Runs provider sync in RQ (Redis Queue) workers and tracks it with FHIRSyncJob rows
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app, has_app_context
from redis import Redis
from redis.exceptions import RedisError
from rq import Queue

from app import db
from emr.exceptions import QueueUnavailableError
from models import FHIRSyncJob

logger = logging.getLogger(__name__)

RUN_SYNC_JOB = 'services.async_processing.run_sync_job'


class SyncJobService:
    """Service for enqueueing and tracking background provider syncs"""

    def __init__(self, queue: Optional[Queue] = None):
        self._queue = queue

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            redis_conn = Redis.from_url(current_app.config['REDIS_URL'])
            self._queue = Queue(current_app.config.get('SYNC_QUEUE_NAME', 'fhir_sync'), connection=redis_conn)
        return self._queue

    def enqueue_sync(self, user_id: int, provider_id: Optional[int] = None,
                     resource_types: Optional[List[str]] = None, since: Optional[datetime] = None,
                     incremental: bool = False) -> FHIRSyncJob:
        """
        Create an FHIRSyncJob and enqueue it

        Args:
            user_id: Owner of the providers
            provider_id: One provider, or None for all active providers
            resource_types: Resource types to sync
            since: Lower bound for _lastUpdated
            incremental: Use each provider's last sync time as the lower bound

        Returns:
            The pending FHIRSyncJob

        Raises:
            QueueUnavailableError: Redis rejected the enqueue; the job row is left failed
        """
        if resource_types and len(resource_types) == 1:
            job_type = 'single_resource'
        elif incremental or since:
            job_type = 'incremental_sync'
        else:
            job_type = 'full_sync'

        record = FHIRSyncJob(
            job_id=uuid.uuid4().hex,
            user_id=user_id,
            linked_provider_id=provider_id,
            job_type=job_type,
            status='pending',
            sync_params={
                'resourceTypes': resource_types,
                'since': since.isoformat() if since else None,
                'incremental': incremental,
            },
        )
        db.session.add(record)
        db.session.commit()

        try:
            self.queue.enqueue(
                RUN_SYNC_JOB,
                record.id,
                job_timeout=current_app.config.get('SYNC_JOB_TIMEOUT', 1800),
                job_id=record.job_id,
            )
        except RedisError as e:
            logger.error(f"Could not enqueue sync job {record.job_id}: {e.__class__.__name__}")
            record.status = 'failed'
            record.error = 'Sync queue unavailable'
            record.completed_at = datetime.utcnow()
            db.session.commit()
            raise QueueUnavailableError("Background sync is temporarily unavailable", transient=True)

        logger.info(f"Enqueued {job_type} job {record.job_id} for user {user_id}")
        return record

    def get_job(self, job_id: str, user_id: int) -> Optional[FHIRSyncJob]:
        """Job record owned by user_id, or None"""
        return FHIRSyncJob.query.filter_by(job_id=job_id, user_id=user_id).first()


# Background Job Functions (these run in the worker processes)

def _execute_sync_job(job_record_id: int) -> Dict[str, Any]:
    from emr.parser import parse_fhir_datetime
    from services.fhir_sync_service import fhir_sync_service

    record = db.session.get(FHIRSyncJob, job_record_id)
    if record is None:
        raise ValueError(f"Sync job {job_record_id} not found")

    record.status = 'running'
    record.started_at = datetime.utcnow()
    db.session.commit()

    params = record.sync_params or {}
    try:
        result = fhir_sync_service.sync_user_providers(
            record.user_id,
            provider_id=record.linked_provider_id,
            resource_types=params.get('resourceTypes'),
            since=parse_fhir_datetime(params.get('since')),
            incremental=bool(params.get('incremental')),
        )
    except Exception as e:
        db.session.rollback()
        record.status = 'failed'
        record.error = getattr(e, 'message', None) or 'Sync failed'
        record.completed_at = datetime.utcnow()
        db.session.commit()
        logger.error(f"Sync job {record.job_id} failed: {e}", exc_info=True)
        raise

    record.status = 'completed'
    record.result = result
    record.completed_at = datetime.utcnow()
    db.session.commit()
    logger.info(f"Sync job {record.job_id} completed: {result['summary']['totalRecordsSynced']} records")
    return result['summary']


def run_sync_job(job_record_id: int) -> Dict[str, Any]:
    """
    Background job: sync the providers named by an FHIRSyncJob row
    This runs in a separate worker process
    """
    if has_app_context():
        return _execute_sync_job(job_record_id)

    from app import create_app
    app = create_app()
    with app.app_context():
        return _execute_sync_job(job_record_id)


def get_sync_job_service() -> SyncJobService:
    """Get sync job service instance"""
    return SyncJobService()
