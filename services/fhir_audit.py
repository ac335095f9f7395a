"""
Audit logging for SMART-on-FHIR linking, token and data-access events

Every event becomes an append-only FHIRAuditLog row and a line on the
dedicated 'fhir_audit' logger. Patient identifiers only ever appear hashed.
"""

import logging
from typing import Any, Dict, Optional

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from app import db
from models import FHIRAuditLog, AUDIT_ACTIONS
from utils.encryption import hash_patient_id

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {
    'access_token', 'refresh_token', 'id_token', 'code', 'code_verifier',
    'client_secret', 'token', 'patient', 'state',
}


class FHIRAuditLogger:
    """Writes FHIR audit events to the database and the audit log stream"""

    def __init__(self):
        # Dedicated logger so audit lines can be routed separately
        self.logger = logging.getLogger('fhir_audit')

    def log_event(self, action: str, user_id: Optional[int], success: bool,
                  linked_provider_id: Optional[int] = None,
                  linking_session_id: Optional[int] = None,
                  resource: Optional[str] = None,
                  error: Optional[str] = None,
                  metadata: Optional[Dict[str, Any]] = None,
                  patient_identifier: Optional[str] = None) -> Optional[FHIRAuditLog]:
        """
        Record one audit event

        Audit failures are logged and rolled back but never raised into the
        operation being audited.

        Args:
            action: One of link_created, link_revoked, token_refresh, data_sync, data_access
            user_id: Portal user the event belongs to
            success: Whether the audited operation succeeded
            linked_provider_id: Provider row, when one exists
            linking_session_id: Pending session, for events before a provider exists
            resource: Resource or endpoint the event concerns
            error: Error code/message for failed operations
            metadata: Extra structured data (sensitive keys are dropped)
            patient_identifier: Raw patient id, stored hashed only
        """
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action '{action}'")

        safe_metadata = self._sanitize_metadata(metadata)
        if patient_identifier:
            safe_metadata['patientHash'] = hash_patient_id(patient_identifier)

        entry = FHIRAuditLog(
            user_id=user_id,
            linked_provider_id=linked_provider_id,
            linking_session_id=linking_session_id,
            action=action,
            resource=resource,
            success=success,
            error=error,
            ip_address=self._get_client_ip(),
            user_agent=self._get_user_agent(),
            event_metadata=safe_metadata,
        )

        try:
            db.session.add(entry)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to write FHIR audit event {action}: {e}")
            return None

        self.logger.info(
            f"FHIR_AUDIT - {action} - success={success} - user={user_id} - "
            f"provider={linked_provider_id} - session={linking_session_id} - error={error}"
        )
        return entry

    def _sanitize_metadata(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Drop token material and raw identifiers from audit metadata"""
        if not metadata:
            return {}
        return {key: value for key, value in metadata.items() if key not in SENSITIVE_KEYS}

    def _get_client_ip(self) -> Optional[str]:
        """Get client IP address from request (ProxyFix has already applied X-Forwarded-For)"""
        if not has_request_context():
            return None
        return request.remote_addr

    def _get_user_agent(self) -> Optional[str]:
        """Get user agent from request"""
        if not has_request_context():
            return None
        agent = request.headers.get('User-Agent')
        return agent[:500] if agent else None


# Global audit logger instance
fhir_audit = FHIRAuditLogger()
