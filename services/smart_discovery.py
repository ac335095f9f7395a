"""
SMART Discovery Service
Resolves provider endpoints and fetches cached SMART configuration metadata
"""

import time
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests
from flask import current_app, has_app_context

from emr.exceptions import DiscoveryError, InvalidConfigurationError, UnknownProviderError

logger = logging.getLogger(__name__)

WELL_KNOWN_SUFFIX = '/.well-known/smart-configuration'


def _setting(name, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


@dataclass
class ProviderEndpoint:
    """Where to discover a provider: a registry entry or a caller-supplied FHIR base URL"""
    name: str
    base_url: str
    well_known_url: str
    provider_key: Optional[str] = None


@dataclass
class SMARTConfiguration:
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    issuer: Optional[str] = None
    scopes_supported: List[str] = field(default_factory=list)
    capabilities: List[str] = field(default_factory=list)
    code_challenge_methods_supported: List[str] = field(default_factory=list)

    @classmethod
    def from_document(cls, document: Dict) -> 'SMARTConfiguration':
        missing = [name for name in ('authorization_endpoint', 'token_endpoint') if not document.get(name)]
        if missing:
            raise InvalidConfigurationError(
                f"SMART configuration is missing required field(s): {', '.join(missing)}"
            )
        return cls(
            authorization_endpoint=document['authorization_endpoint'],
            token_endpoint=document['token_endpoint'],
            revocation_endpoint=document.get('revocation_endpoint'),
            introspection_endpoint=document.get('introspection_endpoint'),
            jwks_uri=document.get('jwks_uri'),
            issuer=document.get('issuer'),
            scopes_supported=list(document.get('scopes_supported') or []),
            capabilities=list(document.get('capabilities') or []),
            code_challenge_methods_supported=list(document.get('code_challenge_methods_supported') or []),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


class SMARTDiscoveryService:
    """Service for resolving providers and caching SMART configuration metadata"""

    def __init__(self):
        self._cache = {}

    def resolve_endpoint(self, provider_key: Optional[str] = None, fhir_url: Optional[str] = None) -> ProviderEndpoint:
        """
        Resolve a registry key or a raw FHIR base URL to a discovery endpoint

        Raises:
            UnknownProviderError: Neither a known key nor an acceptable URL was given
        """
        registry = _setting('KNOWN_FHIR_PROVIDERS', {})

        if provider_key:
            entry = registry.get(provider_key)
            if entry:
                return ProviderEndpoint(
                    name=entry['name'],
                    base_url=entry['base_url'].rstrip('/'),
                    well_known_url=entry['well_known_url'],
                    provider_key=provider_key,
                )
            if not fhir_url:
                raise UnknownProviderError(f"Unknown provider '{provider_key}'")

        if not fhir_url:
            raise UnknownProviderError("Either provider or fhirUrl is required")

        parsed = urlparse(fhir_url)
        allowed_schemes = ('https', 'http') if _setting('ALLOW_INSECURE_FHIR_URLS', False) else ('https',)
        if parsed.scheme not in allowed_schemes or not parsed.netloc:
            raise UnknownProviderError("fhirUrl must be an absolute https URL")

        base_url = fhir_url.rstrip('/')
        return ProviderEndpoint(
            name=parsed.netloc,
            base_url=base_url,
            well_known_url=f"{base_url}{WELL_KNOWN_SUFFIX}",
        )

    def fetch(self, well_known_url: str, cache_timeout: Optional[int] = None) -> SMARTConfiguration:
        """
        Fetch SMART configuration from a .well-known endpoint

        Args:
            well_known_url: Full URL of the smart-configuration document
            cache_timeout: Cache timeout in seconds (defaults to SMART_DISCOVERY_CACHE_TIMEOUT)

        Raises:
            DiscoveryError: Endpoint unreachable, non-2xx, or not JSON
            InvalidConfigurationError: Required endpoints missing
        """
        if cache_timeout is None:
            cache_timeout = _setting('SMART_DISCOVERY_CACHE_TIMEOUT', 300)
        current_time = time.time()

        if well_known_url in self._cache:
            config, timestamp = self._cache[well_known_url]
            if current_time - timestamp < cache_timeout:
                logger.debug(f"Using cached SMART config for {well_known_url}")
                return config

        logger.info(f"Fetching SMART configuration from {well_known_url}")
        try:
            response = requests.get(
                well_known_url,
                timeout=_setting('SMART_DISCOVERY_TIMEOUT', 10),
                headers={'Accept': 'application/json', 'User-Agent': 'Remedara-SMART-Client/1.0'},
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"SMART discovery transport failure for {well_known_url}: {e.__class__.__name__}")
            raise DiscoveryError("SMART configuration endpoint is unreachable", transient=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"SMART discovery request failed for {well_known_url}: {e.__class__.__name__}")
            raise DiscoveryError("SMART configuration request failed")

        if not response.ok:
            logger.error(f"SMART discovery returned HTTP {response.status_code} for {well_known_url}")
            raise DiscoveryError(
                f"SMART configuration endpoint returned HTTP {response.status_code}",
                transient=response.status_code >= 500,
            )

        try:
            document = response.json()
        except ValueError:
            raise DiscoveryError("SMART configuration is not valid JSON")
        if not isinstance(document, dict):
            raise DiscoveryError("SMART configuration is not a JSON object")

        config = SMARTConfiguration.from_document(document)
        self._cache[well_known_url] = (config, current_time)
        logger.info(f"Successfully cached SMART config for {well_known_url}")
        return config

    def get_scopes_supported(self, well_known_url: str) -> list:
        """Get supported scopes from SMART configuration"""
        return self.fetch(well_known_url).scopes_supported

    def clear_cache(self, well_known_url: Optional[str] = None):
        """Clear cache for a specific endpoint or all cache"""
        if well_known_url:
            self._cache.pop(well_known_url, None)
            logger.info(f"Cleared SMART config cache for {well_known_url}")
        else:
            self._cache.clear()
            logger.info("Cleared all SMART config cache")


# Global instance
smart_discovery = SMARTDiscoveryService()
