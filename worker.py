#!/usr/bin/env python3
"""
RQ worker for background provider sync

Picks up jobs enqueued by POST /api/fhir/sync with {"background": true}.
Each job runs services.async_processing.run_sync_job inside the Flask app
context, so the worker needs the same environment as the web process
(DATABASE_URL, ENCRYPTION_KEY, SMART_CLIENT_ID, REDIS_URL).

    python worker.py              # serve the sync queue until stopped
    python worker.py --burst      # drain the queue, then exit
    python worker.py --status     # print queue depth and sync job counts
"""

import os
import socket
import logging
import argparse

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('fhir_sync_worker')


def sync_queue(app):
    """The RQ queue sync jobs are enqueued on, built from app config"""
    from redis import Redis
    from rq import Queue

    connection = Redis.from_url(app.config['REDIS_URL'])
    return Queue(app.config.get('SYNC_QUEUE_NAME', 'fhir_sync'), connection=connection)


def sync_status(app):
    """Queue registries plus FHIRSyncJob rows grouped by status"""
    from sqlalchemy import func
    from app import db
    from models import FHIRSyncJob

    queue = sync_queue(app)
    job_counts = dict(
        db.session.query(FHIRSyncJob.status, func.count(FHIRSyncJob.id))
        .group_by(FHIRSyncJob.status)
        .all()
    )
    return {
        'queue': queue.name,
        'queued': queue.count,
        'running': queue.started_job_registry.count,
        'failed': queue.failed_job_registry.count,
        'jobs': job_counts,
    }


def run(app, burst=False, name=None):
    """Serve the sync queue until stopped (or until empty in burst mode)"""
    from rq import Worker

    queue = sync_queue(app)
    name = name or f"fhir-sync-{socket.gethostname()}-{os.getpid()}"
    logger.info(f"Worker {name} listening on '{queue.name}' (burst={burst})")

    with app.app_context():
        Worker([queue], connection=queue.connection, name=name).work(burst=burst)


def main():
    parser = argparse.ArgumentParser(
        description='RQ worker for FHIR provider sync',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--burst', '-b', action='store_true', help='Exit once the queue is empty')
    parser.add_argument('--name', '-n', default=os.environ.get('RQ_WORKER_NAME'),
                        help='Worker name shown in RQ monitoring')
    parser.add_argument('--status', '-s', action='store_true', help='Print queue and job status, then exit')
    args = parser.parse_args()

    from app import create_app
    app = create_app()

    if args.status:
        with app.app_context():
            status = sync_status(app)
        print(f"Queue '{status['queue']}': {status['queued']} queued, {status['running']} running, "
              f"{status['failed']} failed")
        for job_status, count in sorted(status['jobs'].items()):
            print(f"  {job_status}: {count}")
        return

    run(app, burst=args.burst, name=args.name)


if __name__ == '__main__':
    main()
