import pytest
import requests

from conftest import FHIR_BASE, smart_document
from emr.exceptions import DiscoveryError, InvalidConfigurationError, UnknownProviderError
from services.smart_discovery import SMARTDiscoveryService

WELL_KNOWN = f'{FHIR_BASE}/.well-known/smart-configuration'


@pytest.fixture
def discovery(app):
    return SMARTDiscoveryService()


def test_resolves_registry_key(discovery):
    endpoint = discovery.resolve_endpoint('epic')
    assert endpoint.provider_key == 'epic'
    assert endpoint.name == 'Epic MyChart'
    assert endpoint.well_known_url.endswith('/.well-known/smart-configuration')


def test_unknown_key_without_url_is_rejected(discovery):
    with pytest.raises(UnknownProviderError):
        discovery.resolve_endpoint('not-a-provider')


def test_unknown_key_falls_back_to_url(discovery):
    endpoint = discovery.resolve_endpoint('not-a-provider', f'{FHIR_BASE}/')
    assert endpoint.base_url == FHIR_BASE
    assert endpoint.well_known_url == WELL_KNOWN
    assert endpoint.name == 'fhir.example.org'
    assert endpoint.provider_key is None


def test_plain_http_urls_are_rejected(discovery):
    with pytest.raises(UnknownProviderError):
        discovery.resolve_endpoint(fhir_url='http://fhir.example.org/R4')


def test_plain_http_allowed_when_configured(app, discovery):
    app.config['ALLOW_INSECURE_FHIR_URLS'] = True
    endpoint = discovery.resolve_endpoint(fhir_url='http://localhost:8080/fhir')
    assert endpoint.base_url == 'http://localhost:8080/fhir'


def test_fetch_parses_and_caches(discovery, requests_mock):
    mock = requests_mock.get(WELL_KNOWN, json=smart_document())

    config = discovery.fetch(WELL_KNOWN)
    again = discovery.fetch(WELL_KNOWN)

    assert config.token_endpoint == 'https://auth.example.org/oauth2/token'
    assert config.revocation_endpoint == 'https://auth.example.org/oauth2/revoke'
    assert 'patient/Observation.read' in config.scopes_supported
    assert again is config
    assert mock.call_count == 1


def test_expired_cache_refetches(discovery, requests_mock):
    mock = requests_mock.get(WELL_KNOWN, json=smart_document())
    discovery.fetch(WELL_KNOWN, cache_timeout=0)
    discovery.fetch(WELL_KNOWN, cache_timeout=0)
    assert mock.call_count == 2


def test_missing_required_endpoints(discovery, requests_mock):
    document = smart_document()
    del document['token_endpoint']
    requests_mock.get(WELL_KNOWN, json=document)

    with pytest.raises(InvalidConfigurationError) as excinfo:
        discovery.fetch(WELL_KNOWN)
    assert 'token_endpoint' in excinfo.value.message


def test_server_error_is_transient(discovery, requests_mock):
    requests_mock.get(WELL_KNOWN, status_code=503)
    with pytest.raises(DiscoveryError) as excinfo:
        discovery.fetch(WELL_KNOWN)
    assert excinfo.value.transient


def test_not_found_is_permanent(discovery, requests_mock):
    requests_mock.get(WELL_KNOWN, status_code=404)
    with pytest.raises(DiscoveryError) as excinfo:
        discovery.fetch(WELL_KNOWN)
    assert not excinfo.value.transient


def test_non_json_document(discovery, requests_mock):
    requests_mock.get(WELL_KNOWN, text='<html>login</html>')
    with pytest.raises(DiscoveryError):
        discovery.fetch(WELL_KNOWN)


def test_timeout_is_transient(discovery, requests_mock):
    requests_mock.get(WELL_KNOWN, exc=requests.exceptions.ConnectTimeout)
    with pytest.raises(DiscoveryError) as excinfo:
        discovery.fetch(WELL_KNOWN)
    assert excinfo.value.transient
