import os
from datetime import datetime, timedelta

from cryptography.fernet import Fernet

# Secrets are validated when the app is created and read by config at import
os.environ['SECRET_KEY'] = 'remedara-test-secret-key-0123456789abcdef'
os.environ['ENCRYPTION_KEY'] = Fernet.generate_key().decode()
os.environ['SMART_CLIENT_ID'] = 'remedara-test-client'
os.environ['PATIENT_ID_SALT'] = 'remedara-test-salt'
os.environ.pop('DATABASE_URL', None)
os.environ.pop('ALLOW_INSECURE_FHIR_URLS', None)

import pytest

from app import create_app, db
from models import LinkedProvider, User
from services.smart_discovery import smart_discovery
from utils.encryption import reset_encryption_service

FHIR_BASE = 'https://fhir.example.org/R4'
AUTH_BASE = 'https://auth.example.org/oauth2'


def smart_document(**overrides):
    document = {
        'authorization_endpoint': f'{AUTH_BASE}/authorize',
        'token_endpoint': f'{AUTH_BASE}/token',
        'revocation_endpoint': f'{AUTH_BASE}/revoke',
        'jwks_uri': f'{AUTH_BASE}/jwks',
        'scopes_supported': ['openid', 'launch/patient', 'patient/Observation.read',
                             'patient/MedicationRequest.read'],
        'capabilities': ['launch-standalone', 'client-public'],
        'code_challenge_methods_supported': ['S256'],
    }
    document.update(overrides)
    return document


@pytest.fixture
def app():
    reset_encryption_service()
    smart_discovery.clear_cache()
    app = create_app('testing')
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def user(app):
    user = User(email='patient@example.org', name='Pat Example')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def client(app, user):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user.id)
        sess['_fresh'] = True
    return client


@pytest.fixture
def anonymous_client(app):
    return app.test_client()


@pytest.fixture
def make_provider(app, user):
    def _make(user_id=None, base_url=FHIR_BASE, name='Example Health', status='active',
              tokens=None, expires_in_minutes=60, capabilities=None, document=None):
        provider = LinkedProvider(
            user_id=user_id or user.id,
            organization_name=name,
            base_url=base_url,
            smart_config=document or smart_document(),
            capabilities=capabilities or {},
            status=status,
            token_expires_at=datetime.utcnow() + timedelta(minutes=expires_in_minutes),
            token_scope='launch/patient patient/Observation.read',
            linking_completed_at=datetime.utcnow(),
        )
        provider.token_bundle = tokens or {
            'access_token': 'access-1',
            'refresh_token': 'refresh-1',
            'token_type': 'Bearer',
            'expires_in': 3600,
            'scope': 'launch/patient patient/Observation.read',
            'patient': 'pat-123',
        }
        db.session.add(provider)
        db.session.commit()
        return provider

    return _make
