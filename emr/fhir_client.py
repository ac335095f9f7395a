"""
SMART on FHIR R4 API client for linked providers

Wraps bearer-authenticated reads and searches against one provider's FHIR
server. A 401 triggers exactly one refresh-and-retry; when access cannot be
restored the provider is marked expired and TokenExpiredError is raised.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests
from flask import current_app, has_app_context

from emr.exceptions import (FHIRRequestError, ProviderNotActiveError, RevocationWarning,
                            TokenExchangeError, TokenExpiredError)
from services.oauth_client import OAuthClientService, OAuthTokens, get_oauth_client
from services.smart_discovery import SMARTConfiguration


def _setting(name, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def format_fhir_instant(value: datetime) -> str:
    """Render a datetime as a FHIR instant in UTC (naive values are treated as UTC)"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


class FHIRClient:
    """Client for one linked provider's FHIR R4 endpoint"""

    def __init__(self, base_url: str, tokens: OAuthTokens, smart_config: Optional[SMARTConfiguration] = None,
                 linked_provider=None, oauth_client: Optional[OAuthClientService] = None,
                 token_expires_at: Optional[datetime] = None):
        self.logger = logging.getLogger(__name__)
        self.base_url = base_url.rstrip('/')
        self.tokens = tokens
        self.smart_config = smart_config
        self.linked_provider = linked_provider
        self._oauth_client = oauth_client
        self.token_expires_at = token_expires_at

        self.timeout = _setting('FHIR_HTTP_TIMEOUT', 30)
        self.page_size = _setting('FHIR_SEARCH_PAGE_SIZE', 100)
        self.max_pages = _setting('FHIR_SEARCH_MAX_PAGES', 20)

    @classmethod
    def for_linked_provider(cls, provider) -> 'FHIRClient':
        """Build a client from a LinkedProvider row, decrypting its token bundle"""
        if provider.status != 'active':
            if provider.status == 'expired':
                raise TokenExpiredError(f"Provider {provider.id} authorization has expired")
            raise ProviderNotActiveError(f"Provider {provider.id} is {provider.status}")

        bundle = provider.token_bundle
        if not bundle:
            raise TokenExpiredError(f"Provider {provider.id} has no stored tokens")

        return cls(
            base_url=provider.base_url,
            tokens=OAuthTokens.from_dict(bundle),
            smart_config=SMARTConfiguration.from_document(provider.smart_config),
            linked_provider=provider,
            token_expires_at=provider.token_expires_at,
        )

    @classmethod
    def from_database(cls, provider_id: int, user_id: Optional[int] = None) -> 'FHIRClient':
        """Load a LinkedProvider by id (optionally scoped to a user) and build a client"""
        from models import LinkedProvider

        query = LinkedProvider.query.filter_by(id=provider_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        provider = query.first()
        if provider is None:
            raise ProviderNotActiveError(f"Provider {provider_id} not found")
        return cls.for_linked_provider(provider)

    @property
    def oauth_client(self) -> OAuthClientService:
        if self._oauth_client is None:
            self._oauth_client = get_oauth_client()
        return self._oauth_client

    @property
    def patient_id(self) -> Optional[str]:
        return self.tokens.patient

    def _token_expired(self) -> bool:
        return self.token_expires_at is not None and datetime.utcnow() >= self.token_expires_at

    def _audit(self, action: str, success: bool, error: str = None, metadata: Dict = None):
        if self.linked_provider is None:
            return
        from services.fhir_audit import fhir_audit
        fhir_audit.log_event(action, self.linked_provider.user_id, success,
                             linked_provider_id=self.linked_provider.id,
                             resource=self.base_url, error=error, metadata=metadata)

    def _persist_tokens(self, tokens: OAuthTokens):
        """Store a refreshed token bundle on the linked provider"""
        if self.linked_provider is None:
            return
        from app import db

        provider = self.linked_provider
        provider.token_bundle = tokens.to_dict()
        provider.token_expires_at = self.token_expires_at
        provider.token_scope = tokens.scope or provider.token_scope
        db.session.commit()
        self.logger.info(f"Persisted refreshed tokens for provider {provider.id}")

    def _mark_expired(self, reason: str):
        """Flag the linked provider as needing re-authorization"""
        if self.linked_provider is None:
            return
        from app import db

        self.linked_provider.status = 'expired'
        self.linked_provider.last_sync_error = reason
        db.session.commit()
        self.logger.warning(f"Provider {self.linked_provider.id} marked expired: {reason}")

    def refresh_access_token(self) -> OAuthTokens:
        """
        Refresh the access token and persist the new bundle

        Raises:
            TokenExpiredError: No refresh token, or the token endpoint rejected the refresh
            FHIRRequestError: Token endpoint unreachable or failing (transient, provider stays active)
        """
        if not self.tokens.refresh_token or self.smart_config is None:
            self._mark_expired("Access token expired and no refresh token is available")
            self._audit('token_refresh', False, error='no_refresh_token')
            raise TokenExpiredError("Access token expired and cannot be refreshed")

        try:
            new_tokens = self.oauth_client.refresh_access_token(self.smart_config, self.tokens)
        except TokenExchangeError as e:
            if e.transient:
                self.logger.warning(f"Token refresh deferred: {e.message}")
                self._audit('token_refresh', False, error=e.error_code, metadata={'transient': True})
                raise FHIRRequestError("Token endpoint is temporarily unavailable", transient=True)
            self.logger.error(f"Token refresh failed: {e}")
            self._mark_expired("Token refresh failed")
            self._audit('token_refresh', False, error=e.error_code)
            raise TokenExpiredError("Token refresh failed; provider must be re-linked")
        except ValueError as e:
            self.logger.error(f"Token refresh failed: {e}")
            self._mark_expired("Token refresh failed")
            self._audit('token_refresh', False, error='invalid_token_response')
            raise TokenExpiredError("Token refresh failed; provider must be re-linked")

        self.tokens = new_tokens
        self.token_expires_at = datetime.utcnow() + timedelta(seconds=new_tokens.expires_in)
        self._persist_tokens(new_tokens)
        self._audit('token_refresh', True, metadata={'expiresIn': new_tokens.expires_in})
        return new_tokens

    def _resolve_url(self, resource_path: str) -> str:
        if resource_path.startswith('http://') or resource_path.startswith('https://'):
            return resource_path
        return f"{self.base_url}/{resource_path.lstrip('/')}"

    def _send(self, url: str, params: Optional[Dict]) -> requests.Response:
        headers = self.oauth_client.create_fhir_headers(self.tokens.access_token)
        try:
            return requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            self.logger.warning(f"FHIR request timed out: {url}")
            raise FHIRRequestError("FHIR server timed out", transient=True)
        except requests.exceptions.ConnectionError:
            self.logger.warning(f"FHIR server unreachable: {url}")
            raise FHIRRequestError("FHIR server is unreachable", transient=True)
        except requests.exceptions.RequestException as e:
            self.logger.error(f"FHIR request failed: {e.__class__.__name__}")
            raise FHIRRequestError("FHIR request failed")

    def get(self, resource_path: str, params: Optional[Dict] = None) -> Dict:
        """
        Authenticated GET against the FHIR server

        Args:
            resource_path: Path relative to the base URL, or an absolute URL (Bundle next links)
            params: Query parameters

        Raises:
            TokenExpiredError: Access could not be restored by one refresh
            FHIRRequestError: Any other non-success response or transport failure
        """
        refreshed = False
        if self._token_expired():
            self.logger.info("Access token expired, refreshing before request")
            self.refresh_access_token()
            refreshed = True

        url = self._resolve_url(resource_path)
        self.logger.debug(f"FHIR GET {url}")
        response = self._send(url, params)

        if response.status_code == 401:
            # At most one refresh per call
            if not refreshed:
                self.logger.info("Received 401 Unauthorized, attempting token refresh")
                self.refresh_access_token()
                response = self._send(url, params)
            if response.status_code == 401:
                self._mark_expired("Provider rejected the refreshed access token")
                self._audit('token_refresh', False, error='unauthorized_after_refresh')
                raise TokenExpiredError("Provider rejected the refreshed access token")

        if not response.ok:
            status = response.status_code
            self.logger.error(f"FHIR server returned HTTP {status} for {urlparse(url).path}")
            raise FHIRRequestError(f"FHIR server returned HTTP {status}", status_code=status,
                                   transient=status >= 500 or status == 429)

        try:
            return response.json()
        except ValueError:
            raise FHIRRequestError("FHIR server returned a non-JSON body", status_code=response.status_code)

    def read(self, resource_type: str, resource_id: str) -> Dict:
        """Read a single resource by type and id"""
        return self.get(f"{resource_type}/{resource_id}")

    def get_patient(self) -> Dict:
        """Read the Patient resource from the token's patient context"""
        if not self.patient_id:
            raise FHIRRequestError("No patient context available")
        return self.read('Patient', self.patient_id)

    def _next_link(self, bundle: Dict) -> Optional[str]:
        for link in bundle.get('link') or []:
            if link.get('relation') == 'next' and link.get('url'):
                return link['url']
        return None

    def _same_origin(self, url: str) -> bool:
        base, target = urlparse(self.base_url), urlparse(url)
        return (base.scheme, base.netloc) == (target.scheme, target.netloc)

    def search(self, resource_type: str, params: Optional[Dict] = None,
               since: Optional[datetime] = None, count: Optional[int] = None) -> List[Dict]:
        """
        Search a resource type and follow Bundle next links

        Args:
            resource_type: FHIR resource type (e.g., Observation)
            params: Search parameters (e.g., {'patient': '123'})
            since: Only resources updated at or after this time
            count: Page size

        Returns:
            Matching resources of the requested type across all pages
        """
        query = dict(params or {})
        query['_count'] = count or self.page_size
        if since is not None:
            query['_lastUpdated'] = f"ge{format_fhir_instant(since)}"

        resources = []
        bundle = self.get(resource_type, params=query)
        pages = 1
        while True:
            for entry in bundle.get('entry') or []:
                resource = entry.get('resource')
                if resource and resource.get('resourceType') == resource_type:
                    resources.append(resource)

            next_url = self._next_link(bundle)
            if not next_url:
                break
            if not self._same_origin(next_url):
                self.logger.warning(f"Ignoring {resource_type} next link on a different host")
                break
            if pages >= self.max_pages:
                self.logger.warning(f"Stopped {resource_type} search after {pages} pages")
                break
            bundle = self.get(next_url)
            pages += 1

        self.logger.info(f"Retrieved {len(resources)} {resource_type} resources in {pages} page(s)")
        return resources

    def revoke(self) -> bool:
        """
        Best-effort token revocation at the provider

        Returns:
            True if the provider confirmed revocation
        """
        if self.smart_config is None:
            return False
        token = self.tokens.refresh_token or self.tokens.access_token
        hint = 'refresh_token' if self.tokens.refresh_token else 'access_token'
        try:
            return self.oauth_client.revoke_token(self.smart_config, token, token_type_hint=hint)
        except RevocationWarning as e:
            self.logger.warning(f"Token revocation failed, continuing with local unlink: {e}")
            return False
