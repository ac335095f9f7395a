"""
Configuration settings for the Remedara FHIR linking service
"""

import os
import json
import logging
from datetime import timedelta

logger = logging.getLogger(__name__)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


# Built-in SMART-on-FHIR endpoints patients can link without typing a URL.
# Additional entries can be supplied with FHIR_PROVIDER_REGISTRY_FILE.
DEFAULT_FHIR_PROVIDERS = {
    'epic': {
        'name': 'Epic MyChart',
        'base_url': 'https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4',
        'well_known_url': 'https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4/.well-known/smart-configuration',
    },
    'cerner': {
        'name': 'Cerner PowerChart',
        'base_url': 'https://fhir-open.cerner.com/r4/ec2458f2-1e24-41c8-b71b-0e701af7583d',
        'well_known_url': 'https://fhir-open.cerner.com/r4/ec2458f2-1e24-41c8-b71b-0e701af7583d/.well-known/smart-configuration',
    },
}


def load_provider_registry(path=None):
    """
    Build the known-provider registry from the built-in entries plus an
    optional JSON file of the form {"key": {"name": ..., "base_url": ..., "well_known_url": ...}}
    """
    registry = {key: dict(entry) for key, entry in DEFAULT_FHIR_PROVIDERS.items()}
    path = path or os.environ.get('FHIR_PROVIDER_REGISTRY_FILE')
    if not path:
        return registry

    try:
        with open(path) as fh:
            extra = json.load(fh)
    except (OSError, ValueError) as e:
        logger.error(f"Could not load FHIR provider registry from {path}: {e}")
        raise

    for key, entry in extra.items():
        base_url = entry['base_url'].rstrip('/')
        registry[key] = {
            'name': entry.get('name', key),
            'base_url': base_url,
            'well_known_url': entry.get('well_known_url') or f"{base_url}/.well-known/smart-configuration",
        }
    return registry


class Config:
    """Base configuration - all secrets MUST come from environment variables"""
    # SECRET_KEY is validated at app startup - no default fallback
    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Database configuration
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = DATABASE_URL or 'sqlite:///remedara.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(hours=2)
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # SMART on FHIR OAuth2 client (static registration)
    SMART_CLIENT_ID = os.environ.get('SMART_CLIENT_ID')
    SMART_CLIENT_SECRET = os.environ.get('SMART_CLIENT_SECRET')
    SMART_REDIRECT_URI = os.environ.get('SMART_REDIRECT_URI', 'http://localhost:5000/api/fhir/callback')
    SMART_DEFAULT_SCOPES = [
        'openid', 'profile', 'fhirUser', 'launch/patient', 'offline_access',
        'patient/Patient.read',
        'patient/Observation.read',
        'patient/MedicationRequest.read',
        'patient/AllergyIntolerance.read',
        'patient/Immunization.read',
        'patient/DiagnosticReport.read',
        'patient/Procedure.read',
    ]

    # SMART discovery and outbound HTTP
    SMART_DISCOVERY_CACHE_TIMEOUT = 300  # 5 minutes
    SMART_DISCOVERY_TIMEOUT = 10
    SMART_TOKEN_TIMEOUT = 30  # 30 seconds for token exchange
    FHIR_HTTP_TIMEOUT = 30
    FHIR_SEARCH_PAGE_SIZE = 100
    FHIR_SEARCH_MAX_PAGES = 20
    ALLOW_INSECURE_FHIR_URLS = _env_bool('ALLOW_INSECURE_FHIR_URLS')

    # Linking and sync lifecycle
    LINKING_SESSION_TTL_MINUTES = int(os.environ.get('LINKING_SESSION_TTL_MINUTES', 10))
    SYNC_LOCK_TIMEOUT_MINUTES = int(os.environ.get('SYNC_LOCK_TIMEOUT_MINUTES', 15))
    TOKEN_EXPIRING_WINDOW_HOURS = 24
    TIMELINE_DEFAULT_LIMIT = 50
    TIMELINE_MAX_LIMIT = 200
    DATA_RETENTION_DAYS = 365

    # Browser-facing redirect targets
    PATIENT_DASHBOARD_URL = os.environ.get('PATIENT_DASHBOARD_URL', '/patient/dashboard')
    LOGIN_URL = os.environ.get('LOGIN_URL', '/auth/signin')

    # Background sync queue
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    SYNC_QUEUE_NAME = 'fhir_sync'
    SYNC_JOB_TIMEOUT = 1800

    KNOWN_FHIR_PROVIDERS = load_provider_registry()


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    ALLOW_INSECURE_FHIR_URLS = _env_bool('ALLOW_INSECURE_FHIR_URLS', True)


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    SESSION_COOKIE_SECURE = False
    SMART_CLIENT_ID = 'remedara-test-client'
    SMART_REDIRECT_URI = 'https://remedara.test/api/fhir/callback'
    KNOWN_FHIR_PROVIDERS = {key: dict(entry) for key, entry in DEFAULT_FHIR_PROVIDERS.items()}


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
