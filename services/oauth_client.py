"""
OAuth2 Client Service for SMART on FHIR Authentication
Handles authorization URL building, PKCE token exchange, refresh and revocation
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
from urllib.parse import urlencode

import jwt
import requests
from flask import current_app, has_app_context

from emr.exceptions import (InvalidTokenResponseError, RevocationWarning, TokenExchangeError)
from services.smart_discovery import SMARTConfiguration
from utils.encryption import PKCEPair

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


@dataclass
class OAuthTokens:
    """Token endpoint response; persisted only inside an encrypted bundle"""
    access_token: str
    token_type: str = 'Bearer'
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    patient: Optional[str] = None
    encounter: Optional[str] = None
    id_token: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Dict, previous: Optional['OAuthTokens'] = None) -> 'OAuthTokens':
        """
        Build tokens from a token endpoint JSON body

        On refresh, values the server omits (refresh_token, patient, scope) are
        carried over from the previous bundle.
        """
        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise InvalidTokenResponseError("Token response did not include an access token")

        try:
            expires_in = int(payload.get('expires_in') or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN

        return cls(
            access_token=payload['access_token'],
            token_type=payload.get('token_type') or 'Bearer',
            expires_in=expires_in,
            refresh_token=payload.get('refresh_token') or (previous.refresh_token if previous else None),
            scope=payload.get('scope') or (previous.scope if previous else None),
            patient=payload.get('patient') or (previous.patient if previous else None),
            encounter=payload.get('encounter') or (previous.encounter if previous else None),
            id_token=payload.get('id_token') or (previous.id_token if previous else None),
        )

    @classmethod
    def from_dict(cls, data: Dict) -> 'OAuthTokens':
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__ if key in data})

    def to_dict(self) -> Dict:
        return asdict(self)

    @property
    def granted_scopes(self) -> List[str]:
        return (self.scope or '').split()


class OAuthClientService:
    """Service for SMART on FHIR OAuth2 authorization-code + PKCE flows"""

    def __init__(self, client_id: str = None, redirect_uri: str = None, client_secret: str = None,
                 timeout: int = 30):
        """
        Initialize OAuth client

        Args:
            client_id: OAuth2 client ID
            redirect_uri: Redirect URI for authorization callback
            client_secret: Secret for confidential clients (sent with HTTP Basic)
            timeout: Seconds allowed for token endpoint calls
        """
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.client_secret = client_secret
        self.timeout = timeout

        if not self.client_id:
            raise ValueError("client_id is required for OAuth client")
        if not self.redirect_uri:
            raise ValueError("redirect_uri is required for OAuth client")

    def build_authorization_url(self, config: SMARTConfiguration, aud: str, scopes: List[str],
                                state: str, pkce: PKCEPair, launch: str = None) -> str:
        """
        Build SMART on FHIR authorization URL

        Args:
            config: Discovered SMART configuration
            aud: Audience parameter (FHIR server base URL)
            scopes: Requested scopes
            state: OAuth2 state parameter
            pkce: PKCE verifier/challenge pair
            launch: Launch context token (for EHR launch)
        """
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': ' '.join(scopes),
            'state': state,
            'code_challenge': pkce.code_challenge,
            'code_challenge_method': pkce.code_challenge_method,
            'aud': aud,
        }
        if launch:
            params['launch'] = launch

        separator = '&' if '?' in config.authorization_endpoint else '?'
        logger.info(f"Built authorization URL for {aud}")
        logger.debug(f"Scopes requested: {scopes}")
        return f"{config.authorization_endpoint}{separator}{urlencode(params)}"

    def _post_token_request(self, token_endpoint: str, data: Dict) -> Dict:
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json',
            'User-Agent': 'Remedara-SMART-Client/1.0'
        }
        auth = (self.client_id, self.client_secret) if self.client_secret else None
        if not auth:
            data = dict(data, client_id=self.client_id)

        try:
            response = requests.post(token_endpoint, data=data, headers=headers, auth=auth,
                                     timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning(f"Token endpoint transport failure: {e.__class__.__name__}")
            raise TokenExchangeError("Token endpoint is unreachable", transient=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Token request failed: {e.__class__.__name__}")
            raise TokenExchangeError("Token request failed")

        if not response.ok:
            # Upstream error bodies can echo request data, only the status is kept
            logger.error(f"Token endpoint returned HTTP {response.status_code}")
            raise TokenExchangeError(
                f"Token endpoint returned HTTP {response.status_code}",
                transient=response.status_code >= 500,
            )

        try:
            return response.json()
        except ValueError:
            raise TokenExchangeError("Token endpoint returned a non-JSON body")

    def exchange_code_for_token(self, config: SMARTConfiguration, code: str, code_verifier: str) -> OAuthTokens:
        """
        Exchange authorization code for tokens

        Raises:
            TokenExchangeError: HTTP, transport or JSON failure
            InvalidTokenResponseError: No access token or no patient context
        """
        logger.info(f"Exchanging code for token at {config.token_endpoint}")
        payload = self._post_token_request(config.token_endpoint, {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
            'code_verifier': code_verifier,
        })

        tokens = OAuthTokens.from_response(payload)
        if not tokens.patient:
            raise InvalidTokenResponseError("Token response did not include patient context")

        logger.info("Successfully exchanged code for access token")
        return tokens

    def refresh_access_token(self, config: SMARTConfiguration, current: OAuthTokens) -> OAuthTokens:
        """
        Refresh access token using the refresh token of the current bundle

        Raises:
            TokenExchangeError: No refresh token, or the refresh request failed
        """
        if not current.refresh_token:
            raise TokenExchangeError("No refresh token available")

        logger.info("Refreshing access token")
        payload = self._post_token_request(config.token_endpoint, {
            'grant_type': 'refresh_token',
            'refresh_token': current.refresh_token,
        })
        tokens = OAuthTokens.from_response(payload, previous=current)
        logger.info("Successfully refreshed access token")
        return tokens

    def revoke_token(self, config: SMARTConfiguration, token: str, token_type_hint: str = 'refresh_token') -> bool:
        """
        Revoke a token at the provider's revocation endpoint

        Returns:
            False when the provider advertises no revocation endpoint

        Raises:
            RevocationWarning: The revocation request failed
        """
        if not config.revocation_endpoint:
            logger.info("Provider does not advertise a revocation endpoint")
            return False

        data = {'token': token, 'token_type_hint': token_type_hint, 'client_id': self.client_id}
        auth = (self.client_id, self.client_secret) if self.client_secret else None
        try:
            response = requests.post(config.revocation_endpoint, data=data, auth=auth, timeout=self.timeout,
                                     headers={'Content-Type': 'application/x-www-form-urlencoded'})
        except requests.exceptions.RequestException as e:
            raise RevocationWarning(f"Revocation request failed: {e.__class__.__name__}",
                                    transient=isinstance(e, (requests.exceptions.Timeout,
                                                             requests.exceptions.ConnectionError)))
        if not response.ok:
            raise RevocationWarning(f"Revocation endpoint returned HTTP {response.status_code}")
        return True

    def _fetch_jwks(self, config: SMARTConfiguration) -> Optional[Dict]:
        """Fetch JWKS advertised by the provider, None if unavailable"""
        if not config.jwks_uri:
            logger.warning("No jwks_uri found in SMART configuration")
            return None
        try:
            response = requests.get(config.jwks_uri, timeout=10)
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Failed to fetch JWKS: {e.__class__.__name__}")
            return None

    def verify_id_token(self, id_token: str, config: SMARTConfiguration) -> Optional[Dict]:
        """
        Decode and verify an ID token against the provider's JWKS

        Returns:
            Verified claims, or None when the token cannot be verified
        """
        try:
            unverified_header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Malformed ID token: {e}")
            return None

        kid = unverified_header.get('kid')
        alg = unverified_header.get('alg', 'RS256')
        jwks = self._fetch_jwks(config)
        if not jwks or 'keys' not in jwks:
            logger.warning("Unable to verify ID token signature - JWKS unavailable")
            return None

        for key_data in jwks['keys']:
            if kid is not None and key_data.get('kid') != kid:
                continue
            try:
                public_key = jwt.PyJWK.from_dict(key_data).key
                claims = jwt.decode(
                    id_token,
                    public_key,
                    algorithms=[alg],
                    audience=self.client_id,
                    options={"verify_iss": False},  # Issuer format varies by vendor
                )
                logger.info("ID token signature verified successfully")
                return claims
            except jwt.ExpiredSignatureError:
                logger.warning("ID token has expired")
                return None
            except jwt.InvalidTokenError as e:
                logger.warning(f"ID token verification failed: {e}")
                return None
            except jwt.PyJWKError as e:
                logger.warning(f"Unusable JWK in provider key set: {e}")
                continue

        logger.warning("No JWKS key matched the ID token")
        return None

    def create_fhir_headers(self, access_token: str) -> Dict[str, str]:
        """
        Create headers for FHIR API requests
        """
        return {
            'Authorization': f'Bearer {access_token}',
            'Accept': 'application/fhir+json',
            'User-Agent': 'Remedara-SMART-Client/1.0'
        }


def get_oauth_client() -> OAuthClientService:
    """Build an OAuth client from the current application's configuration"""
    if not has_app_context():
        raise RuntimeError("OAuth client requires an application context")
    cfg = current_app.config
    return OAuthClientService(
        client_id=cfg.get('SMART_CLIENT_ID'),
        redirect_uri=cfg.get('SMART_REDIRECT_URI'),
        client_secret=cfg.get('SMART_CLIENT_SECRET'),
        timeout=cfg.get('SMART_TOKEN_TIMEOUT', 30),
    )
