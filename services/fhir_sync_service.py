"""
FHIR Sync Service
Pulls clinical resources from linked providers into the unified timeline
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from app import db
from emr.exceptions import (FHIRIntegrationError, FHIRRequestError, NoLinkedProvidersError,
                            ProviderNotActiveError, SyncError, SyncInProgressError, TokenExpiredError)
from emr.fhir_client import FHIRClient
from emr.parser import FHIRParser, NormalizedEntry
from models import LinkedProvider, UnifiedTimelineEntry
from services.fhir_audit import fhir_audit

DEFAULT_SYNC_RESOURCE_TYPES = (
    'Observation',
    'MedicationRequest',
    'AllergyIntolerance',
    'Immunization',
    'DiagnosticReport',
    'Procedure',
)


class FHIRSyncService:
    """
    Synchronizes linked providers into UnifiedTimelineEntry rows

    One failing resource type never aborts the others, and one failing
    provider never aborts its siblings.
    """

    def __init__(self, parser: Optional[FHIRParser] = None, client_factory=None):
        self.logger = logging.getLogger(__name__)
        self.parser = parser or FHIRParser()
        self.client_factory = client_factory or FHIRClient.for_linked_provider

    def _acquire_lock(self, provider_id: int):
        """Claim the provider's sync lock; a lock older than the timeout is taken over"""
        now = datetime.utcnow()
        stale_before = now - timedelta(minutes=current_app.config.get('SYNC_LOCK_TIMEOUT_MINUTES', 15))
        claimed = (LinkedProvider.query
                   .filter(LinkedProvider.id == provider_id,
                           or_(LinkedProvider.sync_locked_at.is_(None),
                               LinkedProvider.sync_locked_at < stale_before))
                   .update({'sync_locked_at': now}, synchronize_session=False))
        db.session.commit()
        if claimed != 1:
            raise SyncInProgressError()

    def _release_lock(self, provider_id: int):
        db.session.rollback()
        LinkedProvider.query.filter_by(id=provider_id).update({'sync_locked_at': None},
                                                               synchronize_session=False)
        db.session.commit()

    def resource_types_for(self, provider: LinkedProvider, requested: Optional[List[str]] = None) -> List[str]:
        """Requested types as given, else the defaults the provider's grant covers"""
        if requested:
            return list(dict.fromkeys(requested))
        supported = (provider.capabilities or {}).get('supportedResources') or []
        if not supported or '*' in supported:
            return list(DEFAULT_SYNC_RESOURCE_TYPES)
        return [t for t in DEFAULT_SYNC_RESOURCE_TYPES if t in supported]

    def _upsert_entry(self, provider: LinkedProvider, entry: NormalizedEntry, resource: Dict, synced_at: datetime):
        existing = UnifiedTimelineEntry.query.filter_by(
            linked_provider_id=provider.id,
            fhir_resource_type=entry.resource_type,
            fhir_resource_id=entry.resource_id,
        ).first()

        row = existing or UnifiedTimelineEntry(
            user_id=provider.user_id,
            linked_provider_id=provider.id,
            fhir_resource_type=entry.resource_type,
            fhir_resource_id=entry.resource_id,
        )
        row.organization_name = provider.organization_name
        row.category = entry.category
        row.effective_date = entry.effective_date
        row.title = entry.title
        row.summary = entry.summary
        row.tags = entry.tags
        row.search_terms = entry.search_terms
        row.fhir_resource = resource
        row.synced_at = synced_at
        if existing is None:
            db.session.add(row)

    def _sync_resource_type(self, client: FHIRClient, provider: LinkedProvider, resource_type: str,
                            since: Optional[datetime], errors: List[Dict], synced_at: datetime) -> int:
        """
        Sync one resource type; raises SyncError when the whole type fails

        Per-resource normalization failures are appended to errors and skipped.
        """
        if not self.parser.supports(resource_type):
            raise SyncError(resource_type, f"Unsupported resource type '{resource_type}'",
                            code='unsupported_resource_type')

        try:
            resources = client.search(resource_type, {'patient': client.patient_id}, since=since)
        except TokenExpiredError:
            raise
        except FHIRRequestError as e:
            raise SyncError(resource_type, e.message, code=e.error_code, transient=e.transient)

        count = 0
        for resource in resources:
            try:
                entry = self.parser.normalize(resource)
            except SyncError as e:
                errors.append(e.to_dict())
                continue
            self._upsert_entry(provider, entry, resource, synced_at)
            count += 1

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            self.logger.error(f"Failed to store {resource_type} entries for provider {provider.id}: {e}")
            raise SyncError(resource_type, "Failed to store synced entries", code='storage_failed')
        return count

    def sync_provider(self, provider: LinkedProvider, since: Optional[datetime] = None,
                      resource_types: Optional[List[str]] = None) -> Dict:
        """
        Sync one linked provider

        Args:
            provider: Active LinkedProvider
            since: Only fetch resources updated at or after this time
            resource_types: Resource types to sync (defaults to what the grant covers)

        Returns:
            {'synced': {resourceType: count}, 'errors': [...]}

        Raises:
            SyncInProgressError: Another sync holds this provider's lock
            TokenExpiredError, ProviderNotActiveError: Provider cannot be accessed
        """
        provider_id = provider.id
        self._acquire_lock(provider_id)
        started_at = datetime.utcnow()
        synced: Dict[str, int] = {}
        errors: List[Dict] = []

        try:
            client = self.client_factory(provider)
            types = self.resource_types_for(provider, resource_types)
            self.logger.info(f"Syncing provider {provider_id}: {', '.join(types)} since={since}")

            for resource_type in types:
                try:
                    synced[resource_type] = self._sync_resource_type(
                        client, provider, resource_type, since, errors, started_at)
                except SyncError as e:
                    self.logger.warning(f"{resource_type} sync failed for provider {provider_id}: {e.message}")
                    errors.append(e.to_dict())

            provider.last_sync_success = not errors
            provider.last_sync_error = errors[0]['error'] if errors else None
            if synced:
                provider.last_sync_at = started_at
            db.session.commit()
        except FHIRIntegrationError as e:
            db.session.rollback()
            fhir_audit.log_event('data_sync', provider.user_id, False, linked_provider_id=provider_id,
                                 resource=provider.base_url, error=e.error_code,
                                 metadata={'message': e.message})
            raise
        finally:
            self._release_lock(provider_id)

        fhir_audit.log_event(
            'data_sync', provider.user_id, bool(synced),
            linked_provider_id=provider_id,
            resource=provider.base_url,
            error=None if synced else 'all_resource_types_failed',
            metadata={
                'synced': synced,
                'errorCount': len(errors),
                'since': since.isoformat() if since else None,
            },
        )
        self.logger.info(f"Provider {provider_id} sync finished: {sum(synced.values())} records, "
                         f"{len(errors)} errors")
        return {'synced': synced, 'errors': errors}

    def get_syncable_providers(self, user_id: int, provider_id: Optional[int] = None) -> List[LinkedProvider]:
        """
        Active, sync-enabled providers for a user

        Raises:
            ProviderNotActiveError: provider_id is not an active provider of this user
            NoLinkedProvidersError: The user has nothing to sync
        """
        query = LinkedProvider.query.filter_by(user_id=user_id, status='active', sync_enabled=True)
        if provider_id is not None:
            provider = query.filter_by(id=provider_id).first()
            if provider is None:
                raise ProviderNotActiveError(f"Provider {provider_id} not found or not active")
            return [provider]

        providers = query.order_by(LinkedProvider.id).all()
        if not providers:
            raise NoLinkedProvidersError("No active linked providers to sync")
        return providers

    def sync_user_providers(self, user_id: int, provider_id: Optional[int] = None,
                            resource_types: Optional[List[str]] = None, since: Optional[datetime] = None,
                            incremental: bool = False) -> Dict:
        """
        Sync all (or one) of a user's providers sequentially

        Returns:
            {'syncResults': [...], 'summary': {providersProcessed, totalRecordsSynced, totalErrors, syncedAt}}
        """
        providers = self.get_syncable_providers(user_id, provider_id)
        results = []

        for provider in providers:
            provider_since = since or (provider.last_sync_at if incremental else None)
            pid = provider.id
            try:
                outcome = self.sync_provider(provider, since=provider_since, resource_types=resource_types)
                succeeded = bool(outcome['synced'])
                result = {
                    'providerId': pid,
                    'organizationName': provider.organization_name,
                    'success': succeeded,
                    'synced': outcome['synced'],
                    'errors': outcome['errors'],
                }
                if not succeeded:
                    result['error'] = 'No resource types could be synced'
                results.append(result)
            except FHIRIntegrationError as e:
                self.logger.warning(f"Provider {pid} sync failed: {e.error_code}")
                results.append({'providerId': pid, 'success': False, 'error': e.message, 'code': e.error_code})
            except Exception as e:
                db.session.rollback()
                self.logger.error(f"Unexpected error syncing provider {pid}: {e}", exc_info=True)
                results.append({'providerId': pid, 'success': False, 'error': 'Sync failed', 'code': 'sync_failed'})

        total_records = sum(sum(r.get('synced', {}).values()) for r in results)
        total_errors = 0
        for result in results:
            provider_errors = result.get('errors') or []
            # A provider-level failure with no itemized errors still counts once
            total_errors += len(provider_errors) or (0 if result['success'] else 1)

        return {
            'syncResults': results,
            'summary': {
                'providersProcessed': len(results),
                'totalRecordsSynced': total_records,
                'totalErrors': total_errors,
                'syncedAt': datetime.utcnow().isoformat(),
            },
        }


# Global sync service instance
fhir_sync_service = FHIRSyncService()
