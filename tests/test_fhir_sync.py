from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from app import db
from conftest import FHIR_BASE
from emr.exceptions import NoLinkedProvidersError, ProviderNotActiveError, SyncInProgressError
from models import FHIRAuditLog, UnifiedTimelineEntry
from services.fhir_sync_service import DEFAULT_SYNC_RESOURCE_TYPES, FHIRSyncService

TOKEN_URL = 'https://auth.example.org/oauth2/token'


def _bundle(*resources):
    return {'resourceType': 'Bundle', 'type': 'searchset', 'entry': [{'resource': r} for r in resources]}


def _observation(resource_id, day):
    return {
        'resourceType': 'Observation', 'id': resource_id, 'status': 'final',
        'code': {'text': 'Glucose'}, 'effectiveDateTime': f'2024-01-{day:02d}T08:00:00Z',
        'valueQuantity': {'value': 95, 'unit': 'mg/dL'},
    }


def _immunization(resource_id):
    return {'resourceType': 'Immunization', 'id': resource_id, 'status': 'completed',
            'vaccineCode': {'text': 'Tdap'}, 'occurrenceDateTime': '2023-09-15'}


@pytest.fixture
def sync_service(app):
    return FHIRSyncService()


def test_sync_writes_timeline_entries(sync_service, make_provider, requests_mock):
    provider = make_provider()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(_observation('o1', 1), _observation('o2', 2)))
    requests_mock.get(f'{FHIR_BASE}/Immunization', json=_bundle(_immunization('i1')))

    result = sync_service.sync_provider(provider, resource_types=['Observation', 'Immunization'])

    assert result == {'synced': {'Observation': 2, 'Immunization': 1}, 'errors': []}
    entries = UnifiedTimelineEntry.query.order_by(UnifiedTimelineEntry.effective_date).all()
    assert [e.fhir_resource_id for e in entries] == ['i1', 'o1', 'o2']
    assert entries[1].category == 'lab'
    assert entries[1].summary == '95 mg/dL'
    assert entries[1].organization_name == 'Example Health'
    assert provider.last_sync_success is True
    assert provider.last_sync_at is not None
    assert provider.sync_locked_at is None

    patient_param = parse_qs(urlparse(requests_mock.request_history[0].url).query)['patient']
    assert patient_param == ['pat-123']


def test_sync_is_idempotent(sync_service, make_provider, requests_mock):
    provider = make_provider()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(_observation('o1', 1), _observation('o2', 2)))

    sync_service.sync_provider(provider, resource_types=['Observation'])
    sync_service.sync_provider(provider, resource_types=['Observation'])

    assert UnifiedTimelineEntry.query.count() == 2


def test_resync_updates_changed_resource(sync_service, make_provider, requests_mock):
    provider = make_provider()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(_observation('o1', 1)))
    sync_service.sync_provider(provider, resource_types=['Observation'])

    changed = _observation('o1', 1)
    changed['valueQuantity']['value'] = 140
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(changed))
    sync_service.sync_provider(provider, resource_types=['Observation'])

    entry = UnifiedTimelineEntry.query.one()
    assert entry.summary == '140 mg/dL'


def test_one_failing_type_does_not_stop_the_rest(sync_service, make_provider, requests_mock):
    provider = make_provider()
    requests_mock.get(f'{FHIR_BASE}/Observation', status_code=500)
    requests_mock.get(f'{FHIR_BASE}/Immunization', json=_bundle(_immunization('i1')))

    result = sync_service.sync_provider(provider, resource_types=['Observation', 'Immunization'])

    assert result['synced'] == {'Immunization': 1}
    assert [e['resourceType'] for e in result['errors']] == ['Observation']
    assert provider.last_sync_success is False
    assert provider.last_sync_at is not None
    audit = FHIRAuditLog.query.filter_by(action='data_sync').one()
    assert audit.success is True
    assert audit.event_metadata['errorCount'] == 1


def test_invalid_resources_are_skipped(sync_service, make_provider, requests_mock):
    provider = make_provider()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(
        _observation('o1', 1), {'resourceType': 'Observation', 'id': 'o-undated', 'code': {'text': 'x'}}))

    result = sync_service.sync_provider(provider, resource_types=['Observation'])

    assert result['synced'] == {'Observation': 1}
    assert result['errors'] == [{'resourceType': 'Observation', 'error': 'Resource has no usable clinical date',
                                 'code': 'invalid_resource', 'transient': False,
                                 'resourceId': 'o-undated'}]


def test_all_types_failing_keeps_last_sync_time(sync_service, make_provider, requests_mock):
    provider = make_provider()
    previous = datetime(2024, 1, 1)
    provider.last_sync_at = previous
    db.session.commit()
    requests_mock.get(f'{FHIR_BASE}/Observation', status_code=502)

    result = sync_service.sync_provider(provider, resource_types=['Observation', 'Coverage'])

    assert result['synced'] == {}
    assert {e['code'] for e in result['errors']} == {'fhir_request_failed', 'unsupported_resource_type'}
    assert provider.last_sync_at == previous
    assert provider.last_sync_success is False


def test_default_types_follow_granted_scope(sync_service, make_provider):
    provider = make_provider(capabilities={'supportedResources': ['Patient', 'Observation', 'Immunization']})
    assert sync_service.resource_types_for(provider) == ['Observation', 'Immunization']

    wildcard = make_provider(base_url='https://b.example.org/R4', capabilities={'supportedResources': ['*']})
    assert sync_service.resource_types_for(wildcard) == list(DEFAULT_SYNC_RESOURCE_TYPES)


def test_held_lock_rejects_concurrent_sync(sync_service, make_provider):
    provider = make_provider()
    provider.sync_locked_at = datetime.utcnow()
    db.session.commit()

    with pytest.raises(SyncInProgressError):
        sync_service.sync_provider(provider, resource_types=['Observation'])


def test_stale_lock_is_taken_over(sync_service, make_provider, requests_mock):
    provider = make_provider()
    provider.sync_locked_at = datetime.utcnow() - timedelta(hours=2)
    db.session.commit()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle(_observation('o1', 1)))

    result = sync_service.sync_provider(provider, resource_types=['Observation'])

    assert result['synced'] == {'Observation': 1}
    assert provider.sync_locked_at is None


def test_incremental_sync_uses_last_sync_time(sync_service, user, make_provider, requests_mock):
    provider = make_provider()
    provider.last_sync_at = datetime(2024, 2, 1, 6, 30)
    db.session.commit()
    requests_mock.get(f'{FHIR_BASE}/Observation', json=_bundle())

    sync_service.sync_user_providers(user.id, resource_types=['Observation'], incremental=True)

    query = parse_qs(urlparse(requests_mock.last_request.url).query)
    assert query['_lastUpdated'] == ['ge2024-02-01T06:30:00Z']


def test_provider_failures_are_isolated(sync_service, user, make_provider, requests_mock):
    healthy_a = make_provider(base_url='https://a.example.org/R4', name='Clinic A')
    broken = make_provider(base_url='https://b.example.org/R4', name='Clinic B', expires_in_minutes=-5)
    healthy_c = make_provider(base_url='https://c.example.org/R4', name='Clinic C')
    requests_mock.get('https://a.example.org/R4/Observation', json=_bundle(_observation('a1', 1)))
    requests_mock.get('https://c.example.org/R4/Observation', json=_bundle(_observation('c1', 2),
                                                                           _observation('c2', 3)))
    requests_mock.post(TOKEN_URL, status_code=400, json={'error': 'invalid_grant'})

    result = sync_service.sync_user_providers(user.id, resource_types=['Observation'])

    by_id = {r['providerId']: r for r in result['syncResults']}
    assert by_id[healthy_a.id]['success'] is True
    assert by_id[healthy_c.id]['synced'] == {'Observation': 2}
    assert by_id[broken.id]['success'] is False
    assert by_id[broken.id]['code'] == 'token_expired'
    assert result['summary']['providersProcessed'] == 3
    assert result['summary']['totalRecordsSynced'] == 3
    assert result['summary']['totalErrors'] == 1

    db.session.expire_all()
    assert broken.status == 'expired'
    assert UnifiedTimelineEntry.query.filter_by(linked_provider_id=broken.id).count() == 0


def test_network_failure_at_one_provider_is_isolated(sync_service, user, make_provider, requests_mock):
    healthy_a = make_provider(base_url='https://a.example.org/R4', name='Clinic A')
    unreachable = make_provider(base_url='https://b.example.org/R4', name='Clinic B')
    healthy_c = make_provider(base_url='https://c.example.org/R4', name='Clinic C')
    requests_mock.get('https://a.example.org/R4/Observation', json=_bundle(_observation('a1', 1)))
    requests_mock.get('https://b.example.org/R4/Observation', exc=requests.exceptions.ConnectionError)
    requests_mock.get('https://c.example.org/R4/Observation', json=_bundle(_observation('c1', 2)))

    result = sync_service.sync_user_providers(user.id, resource_types=['Observation'])

    assert len(result['syncResults']) == 3
    failed = [r for r in result['syncResults'] if not r['success']]
    assert [r['providerId'] for r in failed] == [unreachable.id]
    assert failed[0]['errors'][0]['code'] == 'fhir_request_failed'
    assert failed[0]['errors'][0]['transient'] is True
    assert result['summary']['totalRecordsSynced'] == 2

    db.session.expire_all()
    assert unreachable.status == 'active'
    assert unreachable.last_sync_success is False
    assert unreachable.sync_locked_at is None
    assert {healthy_a.last_sync_success, healthy_c.last_sync_success} == {True}


def test_token_endpoint_outage_leaves_provider_linked(sync_service, make_provider, requests_mock):
    provider = make_provider(expires_in_minutes=-5)
    requests_mock.post(TOKEN_URL, exc=requests.exceptions.ConnectTimeout)

    result = sync_service.sync_provider(provider, resource_types=['Observation'])

    assert result['synced'] == {}
    assert result['errors'][0]['transient'] is True
    db.session.expire_all()
    assert provider.status == 'active'
    assert provider.last_sync_at is None



def test_expired_provider_is_skipped_afterwards(sync_service, user, make_provider):
    make_provider(status='expired')
    with pytest.raises(NoLinkedProvidersError):
        sync_service.sync_user_providers(user.id)


def test_unknown_provider_id(sync_service, user, make_provider):
    make_provider()
    with pytest.raises(ProviderNotActiveError):
        sync_service.get_syncable_providers(user.id, provider_id=9999)
