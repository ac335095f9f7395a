from datetime import datetime

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from emr.exceptions import NoLinkedProvidersError, QueueUnavailableError
from models import FHIRSyncJob
from services.async_processing import RUN_SYNC_JOB, SyncJobService, run_sync_job
from services.fhir_sync_service import fhir_sync_service


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, func, *args, **kwargs):
        self.jobs.append((func, args, kwargs))


class DownQueue:
    def enqueue(self, func, *args, **kwargs):
        raise RedisConnectionError('Connection refused')


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def jobs(app, queue):
    return SyncJobService(queue=queue)


def test_enqueue_records_pending_job(jobs, queue, user):
    record = jobs.enqueue_sync(user.id)

    assert record.status == 'pending'
    assert record.job_type == 'full_sync'
    func, args, kwargs = queue.jobs[0]
    assert func == RUN_SYNC_JOB
    assert args == (record.id,)
    assert kwargs['job_id'] == record.job_id
    assert kwargs['job_timeout'] == 1800


def test_job_types(jobs, user):
    assert jobs.enqueue_sync(user.id, resource_types=['Observation']).job_type == 'single_resource'
    assert jobs.enqueue_sync(user.id, incremental=True).job_type == 'incremental_sync'
    assert jobs.enqueue_sync(user.id, since=datetime(2024, 1, 1)).job_type == 'incremental_sync'
    assert jobs.enqueue_sync(user.id, resource_types=['Observation', 'Procedure']).job_type == 'full_sync'


def test_job_lookup_is_owner_scoped(jobs, user):
    record = jobs.enqueue_sync(user.id)
    assert jobs.get_job(record.job_id, user.id) is record
    assert jobs.get_job(record.job_id, user.id + 1) is None


def test_worker_completes_job(jobs, user, monkeypatch):
    calls = {}

    def fake_sync(user_id, **kwargs):
        calls.update(kwargs, user_id=user_id)
        return {'syncResults': [], 'summary': {'providersProcessed': 1, 'totalRecordsSynced': 4,
                                               'totalErrors': 0, 'syncedAt': '2024-01-01T00:00:00'}}

    monkeypatch.setattr(fhir_sync_service, 'sync_user_providers', fake_sync)
    record = jobs.enqueue_sync(user.id, resource_types=['Observation'], since=datetime(2024, 1, 1))

    summary = run_sync_job(record.id)

    assert summary['totalRecordsSynced'] == 4
    assert calls['user_id'] == user.id
    assert calls['resource_types'] == ['Observation']
    assert calls['since'] == datetime(2024, 1, 1)
    job = FHIRSyncJob.query.filter_by(job_id=record.job_id).one()
    assert job.status == 'completed'
    assert job.started_at is not None and job.completed_at is not None
    assert job.result['summary']['totalRecordsSynced'] == 4


def test_worker_records_failure(jobs, user, monkeypatch):
    def failing_sync(user_id, **kwargs):
        raise NoLinkedProvidersError('No active linked providers to sync')

    monkeypatch.setattr(fhir_sync_service, 'sync_user_providers', failing_sync)
    record = jobs.enqueue_sync(user.id)

    with pytest.raises(NoLinkedProvidersError):
        run_sync_job(record.id)

    job = FHIRSyncJob.query.filter_by(job_id=record.job_id).one()
    assert job.status == 'failed'
    assert job.error == 'No active linked providers to sync'


def test_background_sync_route(client, make_provider, queue, monkeypatch):
    provider = make_provider()
    monkeypatch.setattr('routes.fhir_routes.get_sync_job_service', lambda: SyncJobService(queue=queue))

    response = client.post('/api/fhir/sync', json={'providerId': provider.id, 'background': True})

    assert response.status_code == 202
    job_id = response.get_json()['jobId']
    assert len(queue.jobs) == 1

    status = client.get(f'/api/fhir/sync-jobs/{job_id}').get_json()['job']
    assert status['status'] == 'pending'
    assert status['providerId'] == provider.id
    assert status['jobType'] == 'full_sync'


def test_background_sync_checks_providers_first(client, queue, monkeypatch):
    monkeypatch.setattr('routes.fhir_routes.get_sync_job_service', lambda: SyncJobService(queue=queue))

    response = client.post('/api/fhir/sync', json={'background': True})

    assert response.status_code == 400
    assert queue.jobs == []


def test_unknown_job(client):
    assert client.get('/api/fhir/sync-jobs/does-not-exist').status_code == 404


def test_enqueue_failure_marks_job_failed(app, user):
    jobs = SyncJobService(queue=DownQueue())

    with pytest.raises(QueueUnavailableError):
        jobs.enqueue_sync(user.id)

    job = FHIRSyncJob.query.one()
    assert job.status == 'failed'
    assert job.error == 'Sync queue unavailable'
    assert job.completed_at is not None


def test_background_sync_route_without_redis(client, make_provider, monkeypatch):
    make_provider()
    monkeypatch.setattr('routes.fhir_routes.get_sync_job_service', lambda: SyncJobService(queue=DownQueue()))

    response = client.post('/api/fhir/sync', json={'background': True})

    assert response.status_code == 503
    assert response.get_json()['code'] == 'queue_unavailable'
    assert FHIRSyncJob.query.filter_by(status='pending').count() == 0
