"""
Provider linking coordinator

Drives the SMART-on-FHIR standalone launch for a patient:

    INITIATED -> AWAITING_CALLBACK -> EXCHANGING_TOKEN -> ACTIVE | FAILED

A LinkingSession holds the PKCE verifier and state between /authorize and
/callback. A successful callback promotes it to a LinkedProvider in a single
commit; every failure is audited before it is raised to the route.
"""

import enum
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app import db
from emr.exceptions import (FHIRIntegrationError, InvalidStateError, LinkUpdateError,
                            ProviderNotActiveError)
from emr.fhir_client import FHIRClient
from emr.parser import FHIRParser
from models import LinkedProvider, LinkingSession, PatientIdentity
from services.fhir_audit import fhir_audit
from services.oauth_client import OAuthTokens, get_oauth_client
from services.smart_discovery import SMARTConfiguration, smart_discovery
from utils.encryption import EncryptionError, generate_pkce, generate_state, hash_patient_id

logger = logging.getLogger(__name__)

CAPABILITY_FLAGS = (
    'canSchedule', 'canMessage', 'canAccessLabs', 'canAccessMedications',
    'canAccessAllergies', 'canAccessVitals',
)

# Resource-name substring found in a scope -> capability flags it grants
SCOPE_CAPABILITY_TABLE = (
    ('Appointment', ('canSchedule',)),
    ('Slot', ('canSchedule',)),
    ('Communication', ('canMessage',)),
    ('Observation', ('canAccessLabs', 'canAccessVitals')),
    ('DiagnosticReport', ('canAccessLabs',)),
    ('Medication', ('canAccessMedications',)),
    ('AllergyIntolerance', ('canAccessAllergies',)),
)


class LinkingState(enum.Enum):
    INITIATED = 'initiated'
    AWAITING_CALLBACK = 'awaiting_callback'
    EXCHANGING_TOKEN = 'exchanging_token'
    ACTIVE = 'active'
    FAILED = 'failed'


def scope_resources(scopes: Iterable[str]) -> List[str]:
    """Resource types named by SMART scopes such as 'patient/Observation.read'"""
    resources = []
    for scope in scopes:
        if '/' not in scope or '.' not in scope:
            continue
        resource = scope.split('/', 1)[1].split('.', 1)[0]
        if resource and resource not in resources:
            resources.append(resource)
    return resources


def derive_capabilities(scopes: Iterable[str]) -> Dict:
    """
    Map a scope list to capability flags using SCOPE_CAPABILITY_TABLE

    A wildcard resource ('patient/*.read') grants every flag.
    """
    resources = scope_resources(scopes)
    capabilities = {flag: False for flag in CAPABILITY_FLAGS}

    if '*' in resources:
        capabilities = {flag: True for flag in CAPABILITY_FLAGS}
    else:
        for resource in resources:
            for needle, flags in SCOPE_CAPABILITY_TABLE:
                if needle in resource:
                    for flag in flags:
                        capabilities[flag] = True

    capabilities['supportedResources'] = resources
    return capabilities


class ProviderLinkingService:
    """Coordinates authorize/callback/finalize for patient-initiated provider links"""

    def __init__(self, oauth_client=None, discovery=None, parser=None):
        self._oauth_client = oauth_client
        self.discovery = discovery or smart_discovery
        self.parser = parser or FHIRParser()

    @property
    def oauth_client(self):
        return self._oauth_client or get_oauth_client()

    def _transition(self, state: LinkingState, user_id: int, detail: str = ''):
        logger.info(f"Linking for user {user_id} -> {state.value} {detail}".rstrip())

    def initiate(self, user_id: int, provider_key: Optional[str] = None, fhir_url: Optional[str] = None) -> Dict:
        """
        Start linking a provider

        Returns:
            {authorizationUrl, provider, baseUrl, state}

        Raises:
            UnknownProviderError, DiscoveryError, InvalidConfigurationError
        """
        self._transition(LinkingState.INITIATED, user_id, provider_key or fhir_url or '')
        endpoint = self.discovery.resolve_endpoint(provider_key, fhir_url)

        try:
            config = self.discovery.fetch(endpoint.well_known_url)
        except FHIRIntegrationError as e:
            self._transition(LinkingState.FAILED, user_id, e.error_code)
            fhir_audit.log_event('link_created', user_id, False, resource=endpoint.base_url,
                                 error=e.error_code, metadata={'message': e.message, 'stage': 'discovery'})
            raise

        pkce = generate_pkce()
        state = generate_state()
        scopes = list(current_app.config['SMART_DEFAULT_SCOPES'])
        ttl = current_app.config.get('LINKING_SESSION_TTL_MINUTES', 10)
        now = datetime.utcnow()

        session = LinkingSession(
            user_id=user_id,
            provider_key=endpoint.provider_key,
            organization_name=endpoint.name,
            base_url=endpoint.base_url,
            well_known_url=endpoint.well_known_url,
            smart_config=config.to_dict(),
            pkce_state=state,
            requested_scope=' '.join(scopes),
            estimated_capabilities=derive_capabilities(config.scopes_supported),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl),
        )
        session.pkce_code_verifier = pkce.code_verifier
        db.session.add(session)
        db.session.commit()

        authorization_url = self.oauth_client.build_authorization_url(
            config, aud=endpoint.base_url, scopes=scopes, state=state, pkce=pkce)
        self._transition(LinkingState.AWAITING_CALLBACK, user_id, f"session={session.id}")

        return {
            'authorizationUrl': authorization_url,
            'provider': endpoint.name,
            'baseUrl': endpoint.base_url,
            'state': state,
        }

    def _consume_session(self, user_id: int, state: str) -> LinkingSession:
        """Claim the pending session for (user, state); each state is single-use"""
        session = None
        if state:
            session = LinkingSession.query.filter_by(
                user_id=user_id, pkce_state=state, consumed_at=None).first()
        if session is None:
            raise InvalidStateError("No pending linking session matches this state")

        # Conditional update so two racing callbacks cannot both claim the state
        claimed = (LinkingSession.query
                   .filter_by(id=session.id, consumed_at=None)
                   .update({'consumed_at': datetime.utcnow()}, synchronize_session=False))
        db.session.commit()
        if claimed != 1:
            raise InvalidStateError("Linking session was already used")

        db.session.refresh(session)
        if session.is_expired:
            raise InvalidStateError("Linking session has expired")
        return session

    def handle_callback(self, user_id: int, code: str, state: str) -> LinkedProvider:
        """
        Validate the callback, exchange the code and finalize the link

        Raises:
            InvalidStateError, TokenExchangeError, InvalidTokenResponseError, LinkUpdateError
        """
        try:
            session = self._consume_session(user_id, state)
        except InvalidStateError as e:
            self._transition(LinkingState.FAILED, user_id, e.error_code)
            fhir_audit.log_event('link_created', user_id, False, error=e.error_code,
                                 metadata={'message': e.message, 'stage': 'state_validation'})
            raise

        self._transition(LinkingState.EXCHANGING_TOKEN, user_id, f"session={session.id}")
        config = SMARTConfiguration.from_document(session.smart_config)
        try:
            tokens = self.oauth_client.exchange_code_for_token(config, code, session.pkce_code_verifier)
        except FHIRIntegrationError as e:
            self._transition(LinkingState.FAILED, user_id, e.error_code)
            fhir_audit.log_event('link_created', user_id, False, linking_session_id=session.id,
                                 resource=session.base_url, error=e.error_code,
                                 metadata={'message': e.message, 'stage': 'token_exchange'})
            raise

        return self.finalize(session, tokens)

    def _enrich_patient(self, client: FHIRClient) -> Tuple[List[Dict], Optional[str]]:
        """Best-effort Patient read: extra identifiers and managing organization id"""
        try:
            patient = client.get_patient()
        except FHIRIntegrationError as e:
            logger.warning(f"Patient enrichment skipped: {e.error_code}")
            return [], None
        return (self.parser.extract_patient_identifiers(patient),
                self.parser.extract_managing_organization_id(patient))

    def _enrich_organization(self, client: FHIRClient, organization_id: Optional[str]) -> Optional[Dict]:
        """Best-effort Organization read"""
        if not organization_id:
            return None
        try:
            return self.parser.parse_organization(client.read('Organization', organization_id))
        except FHIRIntegrationError as e:
            logger.warning(f"Organization enrichment skipped: {e.error_code}")
            return None

    def _verify_fhir_user(self, tokens: OAuthTokens, config: SMARTConfiguration) -> Optional[str]:
        """Best-effort fhirUser claim from a verified id_token"""
        if not tokens.id_token:
            return None
        claims = self.oauth_client.verify_id_token(tokens.id_token, config)
        if not claims:
            return None
        return claims.get('fhirUser') or claims.get('profile')

    def _find_existing_link(self, user_id: int, base_url: str) -> Optional[LinkedProvider]:
        return (LinkedProvider.query
                .filter(LinkedProvider.user_id == user_id,
                        LinkedProvider.base_url == base_url,
                        LinkedProvider.status != 'revoked')
                .order_by(LinkedProvider.id.desc())
                .first())

    def finalize(self, session: LinkingSession, tokens: OAuthTokens) -> LinkedProvider:
        """
        Promote a pending session to an active LinkedProvider

        Enrichment failures are logged and skipped; only the database write can
        fail the link (LinkUpdateError).
        """
        user_id = session.user_id
        config = SMARTConfiguration.from_document(session.smart_config)
        client = FHIRClient(session.base_url, tokens, config, oauth_client=self.oauth_client)

        extra_identifiers, organization_id = self._enrich_patient(client)
        organization = self._enrich_organization(client, organization_id)
        fhir_user = self._verify_fhir_user(tokens, config)
        # Enrichment may have refreshed the access token
        tokens = client.tokens

        identities = [{'system': f"{session.base_url}/Patient", 'value': tokens.patient, 'use': 'official'}]
        for identifier in extra_identifiers:
            identities.append(identifier)

        capabilities = derive_capabilities(tokens.granted_scopes)
        now = datetime.utcnow()
        session_id = session.id

        try:
            provider = self._find_existing_link(user_id, session.base_url)
            if provider is None:
                provider = LinkedProvider(user_id=user_id, base_url=session.base_url)
                db.session.add(provider)
            else:
                logger.info(f"Re-linking existing provider {provider.id} for user {user_id}")
                provider.identities.clear()

            provider.provider_key = session.provider_key
            provider.organization_id = organization_id
            provider.organization_name = (organization or {}).get('name') or session.organization_name
            provider.organization_metadata = organization
            provider.smart_config = session.smart_config
            provider.token_bundle = tokens.to_dict()
            provider.token_expires_at = client.token_expires_at or now + timedelta(seconds=tokens.expires_in)
            provider.token_scope = tokens.scope
            provider.fhir_user = fhir_user
            provider.capabilities = capabilities
            provider.status = 'active'
            provider.sync_enabled = True
            provider.audit_enabled = True
            provider.encryption_verified = True
            provider.consent_verified = True
            provider.data_retention_days = current_app.config.get('DATA_RETENTION_DAYS', 365)
            provider.linking_completed_at = now

            for identity in identities:
                row = PatientIdentity(
                    system=identity['system'],
                    hashed_value=hash_patient_id(f"{identity['system']}|{identity['value']}"),
                    use=identity.get('use'),
                )
                row.value = identity['value']
                provider.identities.append(row)

            db.session.delete(session)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to store linked provider for user {user_id}: {e}")
            self._transition(LinkingState.FAILED, user_id, 'update_failed')
            failure = LinkUpdateError("Could not store the linked provider")
            fhir_audit.log_event('link_created', user_id, False, linking_session_id=session_id,
                                 error=failure.error_code, metadata={'stage': 'finalize'})
            raise failure

        self._transition(LinkingState.ACTIVE, user_id, f"provider={provider.id}")
        fhir_audit.log_event(
            'link_created', user_id, True,
            linked_provider_id=provider.id,
            linking_session_id=session_id,
            resource=provider.base_url,
            patient_identifier=tokens.patient,
            metadata={
                'organizationName': provider.organization_name,
                'grantedScope': tokens.scope,
                'identityCount': len(identities),
                'patientEnriched': bool(extra_identifiers),
                'organizationEnriched': organization is not None,
            },
        )
        return provider

    def revoke(self, user_id: int, provider_id: int) -> Dict:
        """
        Unlink a provider: best-effort upstream revocation, then scrub locally

        Local token deletion always happens, whatever the provider answers.

        Raises:
            ProviderNotActiveError: No such provider for this user
        """
        from services.timeline_service import timeline_service

        provider = LinkedProvider.query.filter_by(id=provider_id, user_id=user_id).first()
        if provider is None:
            raise ProviderNotActiveError(f"Provider {provider_id} not found")

        token_revoked = False
        if provider.status == 'active' and provider.has_tokens:
            try:
                token_revoked = FHIRClient.for_linked_provider(provider).revoke()
            except (FHIRIntegrationError, EncryptionError) as e:
                logger.warning(f"Skipping upstream revocation for provider {provider_id}: {e}")

        try:
            provider.scrub_tokens()
            provider.status = 'revoked'
            provider.sync_enabled = False
            provider.sync_locked_at = None
            provider.identities.clear()
            deleted_entries = timeline_service.delete_entries_for_provider(provider.id)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to revoke provider {provider_id}: {e}")
            raise LinkUpdateError("Could not unlink the provider")

        fhir_audit.log_event(
            'link_revoked', user_id, True,
            linked_provider_id=provider.id,
            resource=provider.base_url,
            metadata={
                'tokenRevocationSuccess': token_revoked,
                'revokedBy': 'patient',
                'timelineEntriesDeleted': deleted_entries,
            },
        )
        logger.info(f"Provider {provider_id} revoked for user {user_id} (upstream revoked: {token_revoked})")
        return {
            'success': True,
            'message': f"{provider.organization_name} has been disconnected",
            'tokenRevoked': token_revoked,
        }


# Global service instance
provider_linking = ProviderLinkingService()
