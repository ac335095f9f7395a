"""
SMART on FHIR provider linking, sync and timeline API
JSON responses use camelCase keys; the callback only ever redirects.
"""

import logging
from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, redirect, request
from flask_login import current_user, login_required

from emr.exceptions import (DiscoveryError, FHIRIntegrationError, InvalidConfigurationError,
                            NoLinkedProvidersError, ProviderNotActiveError, QueueUnavailableError,
                            UnknownProviderError)
from emr.parser import parse_fhir_datetime
from models import LinkedProvider
from services.async_processing import get_sync_job_service
from services.fhir_sync_service import fhir_sync_service
from services.provider_linking import provider_linking
from services.timeline_service import timeline_service

logger = logging.getLogger(__name__)
fhir_bp = Blueprint('fhir', __name__, url_prefix='/api/fhir')

CALLBACK_ERROR_CODES = {
    'invalid_state', 'token_exchange_failed', 'invalid_token_response', 'update_failed',
}


def _dashboard_redirect(**params):
    return redirect(f"{current_app.config['PATIENT_DASHBOARD_URL']}?{urlencode(params)}")


def _error(message, status, code=None):
    body = {'error': message}
    if code:
        body['code'] = code
    return jsonify(body), status


@fhir_bp.route('/known-providers', methods=['GET'])
@login_required
def known_providers():
    """Registry of organizations that can be linked without a custom URL"""
    registry = current_app.config.get('KNOWN_FHIR_PROVIDERS', {})
    return jsonify({
        'providers': [
            {'key': key, 'name': entry['name'], 'baseUrl': entry['base_url']}
            for key, entry in sorted(registry.items())
        ]
    })


@fhir_bp.route('/authorize', methods=['GET'])
@login_required
def authorize():
    """
    Start linking a provider
    Query: provider=<registry key> or fhirUrl=<FHIR base URL>
    """
    provider_key = request.args.get('provider')
    fhir_url = request.args.get('fhirUrl')
    if not provider_key and not fhir_url:
        return _error('Provider or FHIR URL is required', 400, 'missing_provider')

    try:
        result = provider_linking.initiate(current_user.id, provider_key=provider_key, fhir_url=fhir_url)
    except (UnknownProviderError, InvalidConfigurationError) as e:
        return _error(e.message, 400, e.error_code)
    except DiscoveryError as e:
        return _error('Failed to discover SMART configuration', 502, e.error_code)
    except Exception as e:
        logger.error(f"Authorization initiation failed: {e}", exc_info=True)
        return _error('Failed to initiate authorization', 500, 'authorize_failed')

    return jsonify(result)


@fhir_bp.route('/callback', methods=['GET'])
def callback():
    """
    OAuth2 redirect target for the provider's authorization server
    Always redirects; outcomes travel as query-string codes.
    """
    if not current_user.is_authenticated:
        return redirect(f"{current_app.config['LOGIN_URL']}?{urlencode({'error': 'unauthorized'})}")

    code = request.args.get('code')
    state = request.args.get('state')
    error = request.args.get('error')

    if error:
        # Provider-supplied text is logged only, never reflected to the browser
        logger.warning(f"Authorization server returned error '{error}': {request.args.get('error_description')}")
        return _dashboard_redirect(error='oauth_failed')

    if not code or not state:
        logger.warning("Callback missing code or state")
        return _dashboard_redirect(error='invalid_callback')

    try:
        provider = provider_linking.handle_callback(current_user.id, code, state)
    except FHIRIntegrationError as e:
        outcome = e.error_code if e.error_code in CALLBACK_ERROR_CODES else 'callback_failed'
        logger.warning(f"Provider linking failed for user {current_user.id}: {e.error_code}")
        return _dashboard_redirect(error=outcome)
    except Exception as e:
        logger.error(f"Unexpected callback failure: {e}", exc_info=True)
        return _dashboard_redirect(error='callback_failed')

    return _dashboard_redirect(success='provider_linked', provider=provider.organization_name)


@fhir_bp.route('/providers', methods=['GET'])
@login_required
def list_providers():
    """Linked providers for the current user, without token material"""
    window = current_app.config.get('TOKEN_EXPIRING_WINDOW_HOURS', 24)
    providers = (LinkedProvider.query
                 .filter_by(user_id=current_user.id)
                 .order_by(LinkedProvider.created_at.desc(), LinkedProvider.id.desc())
                 .all())
    projected = [p.to_dict(expiring_window_hours=window) for p in providers]
    return jsonify({
        'providers': projected,
        'total': len(projected),
        'active': sum(1 for p in projected if p['status'] == 'active'),
        'expired': sum(1 for p in projected if p['status'] == 'expired' or p['isTokenExpired']),
    })


@fhir_bp.route('/providers/<int:provider_id>', methods=['GET'])
@login_required
def get_provider(provider_id):
    provider = LinkedProvider.query.filter_by(id=provider_id, user_id=current_user.id).first()
    if provider is None:
        return _error('Provider not found', 404, 'not_found')
    window = current_app.config.get('TOKEN_EXPIRING_WINDOW_HOURS', 24)
    return jsonify({'provider': provider.to_dict(expiring_window_hours=window)})


@fhir_bp.route('/providers', methods=['DELETE'])
@login_required
def revoke_provider():
    """Unlink a provider: ?id=<provider id>"""
    raw_id = request.args.get('id')
    if not raw_id:
        return _error('Provider ID is required', 400, 'missing_id')
    try:
        provider_id = int(raw_id)
    except ValueError:
        return _error('Provider ID must be an integer', 400, 'invalid_id')

    try:
        result = provider_linking.revoke(current_user.id, provider_id)
    except ProviderNotActiveError:
        return _error('Provider not found', 404, 'not_found')
    except FHIRIntegrationError as e:
        return _error('Failed to revoke provider', 500, e.error_code)

    return jsonify(result)


@fhir_bp.route('/timeline', methods=['GET'])
@login_required
def get_timeline():
    """Unified timeline with category/provider/since/search filters and paging"""
    try:
        filters = timeline_service.parse_query_args(request.args)
    except ValueError as e:
        return _error(str(e), 400, 'invalid_query')

    return jsonify(timeline_service.query_timeline(current_user.id, **filters))


@fhir_bp.route('/timeline', methods=['POST'])
@fhir_bp.route('/sync', methods=['POST'])
@login_required
def trigger_sync():
    """
    Sync linked providers into the timeline
    Body: {providerId?, resourceTypes?, since?, incremental?, background?}
    """
    payload = request.get_json(silent=True) or {}

    provider_id = payload.get('providerId')
    if provider_id is not None:
        try:
            provider_id = int(provider_id)
        except (TypeError, ValueError):
            return _error('providerId must be an integer', 400, 'invalid_provider')

    resource_types = payload.get('resourceTypes')
    if resource_types is not None and (not isinstance(resource_types, list)
                                       or not all(isinstance(t, str) for t in resource_types)):
        return _error('resourceTypes must be a list of resource type names', 400, 'invalid_resource_types')

    since = None
    if payload.get('since'):
        since = parse_fhir_datetime(payload['since'])
        if since is None:
            return _error('since must be an ISO-8601 date', 400, 'invalid_since')

    incremental = bool(payload.get('incremental'))

    try:
        if payload.get('background'):
            fhir_sync_service.get_syncable_providers(current_user.id, provider_id)
            job = get_sync_job_service().enqueue_sync(
                current_user.id, provider_id=provider_id, resource_types=resource_types,
                since=since, incremental=incremental)
            return jsonify({'success': True, 'jobId': job.job_id, 'status': job.status}), 202

        result = fhir_sync_service.sync_user_providers(
            current_user.id, provider_id=provider_id, resource_types=resource_types,
            since=since, incremental=incremental)
    except ProviderNotActiveError:
        return _error('Provider not found or not active', 404, 'provider_not_active')
    except NoLinkedProvidersError:
        return _error('No active providers found', 400, 'no_providers')
    except QueueUnavailableError:
        return _error('Background sync is temporarily unavailable', 503, 'queue_unavailable')

    return jsonify({'success': True, **result})


@fhir_bp.route('/sync-jobs/<job_id>', methods=['GET'])
@login_required
def get_sync_job(job_id):
    job = get_sync_job_service().get_job(job_id, current_user.id)
    if job is None:
        return _error('Sync job not found', 404, 'not_found')
    return jsonify({'job': job.to_dict()})
