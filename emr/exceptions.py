"""
Error taxonomy for provider linking, FHIR access and sync

Every error carries a stable ``error_code`` (used in redirect query strings
and JSON bodies) and a ``transient`` flag telling callers whether a retry
may succeed. Messages never include upstream response bodies.
"""


class FHIRIntegrationError(Exception):
    """Base class for SMART-on-FHIR integration failures"""
    error_code = 'fhir_error'

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.transient = transient


class UnknownProviderError(FHIRIntegrationError):
    """Provider key is not in the registry and no usable FHIR URL was given"""
    error_code = 'unknown_provider'


class DiscoveryError(FHIRIntegrationError):
    """SMART configuration could not be fetched or parsed"""
    error_code = 'discovery_failed'


class InvalidConfigurationError(FHIRIntegrationError):
    """SMART configuration is missing required endpoints"""
    error_code = 'invalid_configuration'


class InvalidStateError(FHIRIntegrationError):
    """Callback state does not match an open linking session"""
    error_code = 'invalid_state'


class TokenExchangeError(FHIRIntegrationError):
    error_code = 'token_exchange_failed'


class InvalidTokenResponseError(FHIRIntegrationError):
    """Token endpoint answered without an access token or patient context"""
    error_code = 'invalid_token_response'


class LinkUpdateError(FHIRIntegrationError):
    error_code = 'update_failed'


class TokenExpiredError(FHIRIntegrationError):
    """Access could not be restored; the patient must re-link the provider"""
    error_code = 'token_expired'


class ProviderNotActiveError(FHIRIntegrationError):
    error_code = 'provider_not_active'


class FHIRRequestError(FHIRIntegrationError):
    """Non-success response or transport failure talking to a FHIR server"""
    error_code = 'fhir_request_failed'

    def __init__(self, message: str, status_code: int = None, transient: bool = False):
        super().__init__(message, transient=transient)
        self.status_code = status_code


class SyncError(FHIRIntegrationError):
    """Non-fatal failure for one resource type or one resource during sync"""
    error_code = 'sync_error'

    def __init__(self, resource_type: str, message: str, resource_id: str = None,
                 code: str = None, transient: bool = False):
        super().__init__(message, transient=transient)
        self.resource_type = resource_type
        self.resource_id = resource_id
        if code:
            self.error_code = code

    def to_dict(self):
        result = {
            'resourceType': self.resource_type,
            'error': self.message,
            'code': self.error_code,
            'transient': self.transient,
        }
        if self.resource_id:
            result['resourceId'] = self.resource_id
        return result


class SyncInProgressError(FHIRIntegrationError):
    """Another sync run holds the provider's lock"""
    error_code = 'sync_in_progress'

    def __init__(self, message: str = 'A sync is already running for this provider'):
        super().__init__(message, transient=True)


class RevocationWarning(FHIRIntegrationError):
    """Token revocation at the provider failed; local unlinking still proceeds"""
    error_code = 'revocation_failed'


class NoLinkedProvidersError(FHIRIntegrationError):
    """User has no active, sync-enabled providers"""
    error_code = 'no_providers'


class QueueUnavailableError(FHIRIntegrationError):
    """Background sync could not be enqueued; the job row is marked failed"""
    error_code = 'queue_unavailable'
