import json
import time
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import FHIR_BASE, smart_document
from emr.exceptions import InvalidTokenResponseError, RevocationWarning, TokenExchangeError
from services.oauth_client import OAuthClientService, OAuthTokens
from services.smart_discovery import SMARTConfiguration
from utils.encryption import generate_pkce

CLIENT_ID = 'remedara-test-client'
REDIRECT_URI = 'https://remedara.test/api/fhir/callback'
TOKEN_URL = 'https://auth.example.org/oauth2/token'


@pytest.fixture
def config():
    return SMARTConfiguration.from_document(smart_document())


@pytest.fixture
def oauth():
    return OAuthClientService(client_id=CLIENT_ID, redirect_uri=REDIRECT_URI)


def test_requires_client_id_and_redirect():
    with pytest.raises(ValueError):
        OAuthClientService(client_id=None, redirect_uri=REDIRECT_URI)
    with pytest.raises(ValueError):
        OAuthClientService(client_id=CLIENT_ID, redirect_uri=None)


def test_authorization_url_parameters(oauth, config):
    pkce = generate_pkce()
    url = oauth.build_authorization_url(config, aud=FHIR_BASE, scopes=['openid', 'patient/Observation.read'],
                                        state='state-1', pkce=pkce)

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert f'{parsed.scheme}://{parsed.netloc}{parsed.path}' == config.authorization_endpoint
    assert params == {
        'response_type': 'code',
        'client_id': CLIENT_ID,
        'redirect_uri': REDIRECT_URI,
        'scope': 'openid patient/Observation.read',
        'state': 'state-1',
        'code_challenge': pkce.code_challenge,
        'code_challenge_method': 'S256',
        'aud': FHIR_BASE,
    }
    assert pkce.code_verifier not in url


def test_code_exchange_sends_verifier(oauth, config, requests_mock):
    requests_mock.post(TOKEN_URL, json={
        'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_in': 1800,
        'scope': 'launch/patient patient/Observation.read', 'patient': 'pat-123',
    })

    tokens = oauth.exchange_code_for_token(config, 'code-1', 'verifier-1')

    form = parse_qs(requests_mock.last_request.text)
    assert form['grant_type'] == ['authorization_code']
    assert form['code'] == ['code-1']
    assert form['code_verifier'] == ['verifier-1']
    assert form['client_id'] == [CLIENT_ID]
    assert form['redirect_uri'] == [REDIRECT_URI]
    assert 'Authorization' not in requests_mock.last_request.headers
    assert tokens.patient == 'pat-123'
    assert tokens.expires_in == 1800
    assert tokens.granted_scopes == ['launch/patient', 'patient/Observation.read']


def test_confidential_client_uses_basic_auth(config, requests_mock):
    oauth = OAuthClientService(client_id=CLIENT_ID, redirect_uri=REDIRECT_URI, client_secret='s3cret')
    requests_mock.post(TOKEN_URL, json={'access_token': 'a', 'patient': 'p'})

    oauth.exchange_code_for_token(config, 'code-1', 'verifier-1')

    assert requests_mock.last_request.headers['Authorization'].startswith('Basic ')
    assert 'client_id' not in parse_qs(requests_mock.last_request.text)


def test_exchange_without_patient_context(oauth, config, requests_mock):
    requests_mock.post(TOKEN_URL, json={'access_token': 'access-1'})
    with pytest.raises(InvalidTokenResponseError):
        oauth.exchange_code_for_token(config, 'code-1', 'verifier-1')


def test_exchange_without_access_token(oauth, config, requests_mock):
    requests_mock.post(TOKEN_URL, json={'patient': 'pat-123'})
    with pytest.raises(InvalidTokenResponseError):
        oauth.exchange_code_for_token(config, 'code-1', 'verifier-1')


def test_exchange_rejected(oauth, config, requests_mock):
    requests_mock.post(TOKEN_URL, status_code=400, json={'error': 'invalid_grant'})
    with pytest.raises(TokenExchangeError) as excinfo:
        oauth.exchange_code_for_token(config, 'code-1', 'verifier-1')
    assert not excinfo.value.transient
    assert 'invalid_grant' not in excinfo.value.message


def test_refresh_keeps_omitted_fields(oauth, config, requests_mock):
    current = OAuthTokens(access_token='old', refresh_token='refresh-1', patient='pat-123',
                          scope='patient/Observation.read')
    requests_mock.post(TOKEN_URL, json={'access_token': 'new', 'expires_in': 600})

    refreshed = oauth.refresh_access_token(config, current)

    assert parse_qs(requests_mock.last_request.text)['grant_type'] == ['refresh_token']
    assert refreshed.access_token == 'new'
    assert refreshed.refresh_token == 'refresh-1'
    assert refreshed.patient == 'pat-123'
    assert refreshed.scope == 'patient/Observation.read'


def test_refresh_requires_refresh_token(oauth, config):
    with pytest.raises(TokenExchangeError):
        oauth.refresh_access_token(config, OAuthTokens(access_token='old'))


def test_revocation(oauth, config, requests_mock):
    requests_mock.post('https://auth.example.org/oauth2/revoke', status_code=200)
    assert oauth.revoke_token(config, 'refresh-1') is True

    requests_mock.post('https://auth.example.org/oauth2/revoke', status_code=500)
    with pytest.raises(RevocationWarning):
        oauth.revoke_token(config, 'refresh-1')


def test_revocation_without_endpoint(oauth):
    config = SMARTConfiguration.from_document(smart_document(revocation_endpoint=None))
    assert oauth.revoke_token(config, 'refresh-1') is False


def _signed_id_token(private_key, audience, kid='key-1'):
    claims = {'aud': audience, 'sub': 'user-1', 'fhirUser': f'{FHIR_BASE}/Patient/pat-123',
              'iss': 'https://auth.example.org', 'exp': int(time.time()) + 300}
    return jwt.encode(claims, private_key, algorithm='RS256', headers={'kid': kid})


def _jwks(private_key, kid='key-1'):
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk['kid'] = kid
    return {'keys': [jwk]}


def test_id_token_verified_against_jwks(oauth, config, requests_mock):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    requests_mock.get(config.jwks_uri, json=_jwks(key))

    claims = oauth.verify_id_token(_signed_id_token(key, CLIENT_ID), config)

    assert claims['fhirUser'] == f'{FHIR_BASE}/Patient/pat-123'


def test_id_token_for_another_client_is_rejected(oauth, config, requests_mock):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    requests_mock.get(config.jwks_uri, json=_jwks(key))

    assert oauth.verify_id_token(_signed_id_token(key, 'someone-else'), config) is None


def test_id_token_signed_by_unknown_key(oauth, config, requests_mock):
    trusted = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    forged = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    requests_mock.get(config.jwks_uri, json=_jwks(trusted))

    assert oauth.verify_id_token(_signed_id_token(forged, CLIENT_ID), config) is None


def test_fhir_headers(oauth):
    headers = oauth.create_fhir_headers('access-1')
    assert headers['Authorization'] == 'Bearer access-1'
    assert headers['Accept'] == 'application/fhir+json'
