"""
Database models for the Remedara FHIR linking service
"""
from datetime import datetime, timedelta
from flask_login import UserMixin
import logging
from sqlalchemy import event
from sqlalchemy.ext.hybrid import hybrid_property

# Import db from app module
from app import db

from utils.encryption import encrypt_field, decrypt_field, get_encryption_service

logger = logging.getLogger(__name__)

PROVIDER_STATUSES = ('active', 'expired', 'revoked')
AUDIT_ACTIONS = ('link_created', 'link_revoked', 'token_refresh', 'data_sync', 'data_access')
TIMELINE_CATEGORIES = ('lab', 'vital', 'medication', 'allergy', 'immunization', 'procedure', 'encounter')
SYNC_JOB_TYPES = ('full_sync', 'incremental_sync', 'single_resource')
SYNC_JOB_STATUSES = ('pending', 'running', 'completed', 'failed')


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    """Portal account; authentication itself is handled by the session provider"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(150))
    is_active_user = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<User {self.id}>'


class LinkingSession(db.Model):
    """
    Pending provider link created by /authorize and consumed by /callback

    Holds the PKCE verifier and state for one authorization attempt. The row
    is deleted when the link is promoted to a LinkedProvider; abandoned rows
    are purged once expired.
    """
    __tablename__ = 'fhir_linking_sessions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    provider_key = db.Column(db.String(50))  # Registry key, NULL for custom URLs
    organization_name = db.Column(db.String(200), nullable=False)
    base_url = db.Column(db.String(500), nullable=False)
    well_known_url = db.Column(db.String(500), nullable=False)
    smart_config = db.Column(db.JSON, nullable=False)

    pkce_state = db.Column(db.String(128), nullable=False, unique=True)
    _pkce_code_verifier = db.Column('pkce_code_verifier', db.Text, nullable=False)
    requested_scope = db.Column(db.Text)
    estimated_capabilities = db.Column(db.JSON)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_linking_session_user_state', 'user_id', 'pkce_state'),
        db.Index('idx_linking_session_expires', 'expires_at'),
    )

    @hybrid_property
    def pkce_code_verifier(self):
        """Get decrypted PKCE verifier"""
        if not self._pkce_code_verifier:
            return None
        return decrypt_field(self._pkce_code_verifier)

    @pkce_code_verifier.setter
    def pkce_code_verifier(self, value):
        self._pkce_code_verifier = encrypt_field(value)

    @property
    def is_expired(self):
        return datetime.utcnow() >= self.expires_at

    def __repr__(self):
        return f'<LinkingSession {self.id} for user {self.user_id}>'


class LinkedProvider(db.Model):
    """A patient's authorized connection to one healthcare organization's FHIR server"""
    __tablename__ = 'fhir_linked_providers'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    provider_key = db.Column(db.String(50))
    organization_id = db.Column(db.String(200))
    organization_name = db.Column(db.String(200), nullable=False)
    organization_metadata = db.Column(db.JSON)
    base_url = db.Column(db.String(500), nullable=False)
    smart_config = db.Column(db.JSON, nullable=False)

    # Token storage (encrypted at rest as a single JSON bundle)
    _encrypted_tokens = db.Column('encrypted_tokens', db.Text)
    token_expires_at = db.Column(db.DateTime)
    token_scope = db.Column(db.Text)  # Scopes actually granted
    fhir_user = db.Column(db.String(500))  # fhirUser claim from a verified id_token

    capabilities = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), nullable=False, default='active')

    # Compliance flags
    audit_enabled = db.Column(db.Boolean, default=True)
    encryption_verified = db.Column(db.Boolean, default=False)
    consent_verified = db.Column(db.Boolean, default=False)
    data_retention_days = db.Column(db.Integer, default=365)

    # Sync metadata
    sync_enabled = db.Column(db.Boolean, default=True)
    last_sync_at = db.Column(db.DateTime)
    last_sync_success = db.Column(db.Boolean)
    last_sync_error = db.Column(db.Text)
    sync_locked_at = db.Column(db.DateTime)

    linking_completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = db.relationship('User', backref=db.backref('linked_providers', lazy=True))
    identities = db.relationship('PatientIdentity', backref='linked_provider', lazy=True,
                                 cascade='all, delete-orphan')
    timeline_entries = db.relationship('UnifiedTimelineEntry', backref='linked_provider', lazy='dynamic',
                                       cascade='all, delete-orphan', passive_deletes=True)

    __table_args__ = (
        db.Index('idx_linked_provider_user_status', 'user_id', 'status'),
        db.Index('idx_linked_provider_user_base', 'user_id', 'base_url'),
    )

    @property
    def token_bundle(self):
        """Decrypted token bundle dict, or None once scrubbed"""
        if not self._encrypted_tokens:
            return None
        return get_encryption_service().decrypt_json(self._encrypted_tokens)

    @token_bundle.setter
    def token_bundle(self, bundle):
        if bundle is None:
            self._encrypted_tokens = None
        else:
            self._encrypted_tokens = get_encryption_service().encrypt_json(bundle)

    @property
    def has_tokens(self):
        return self._encrypted_tokens is not None

    @property
    def patient_fhir_id(self):
        bundle = self.token_bundle
        return bundle.get('patient') if bundle else None

    def scrub_tokens(self):
        """Remove all token material; the row keeps only non-secret metadata"""
        self._encrypted_tokens = None
        self.token_expires_at = None
        self.token_scope = None

    @property
    def is_token_expired(self):
        """Check if the access token is expired"""
        if not self.token_expires_at:
            return True
        return datetime.utcnow() >= self.token_expires_at

    def is_token_expiring(self, window_hours=24):
        """Check if the access token expires within the window"""
        if not self.token_expires_at:
            return True
        return datetime.utcnow() >= (self.token_expires_at - timedelta(hours=window_hours))

    @property
    def days_since_last_sync(self):
        if not self.last_sync_at:
            return None
        return (datetime.utcnow() - self.last_sync_at).days

    @property
    def compliance_flags(self):
        return {
            'auditEnabled': bool(self.audit_enabled),
            'encryptionVerified': bool(self.encryption_verified),
            'consentVerified': bool(self.consent_verified),
            'dataRetentionDays': self.data_retention_days,
        }

    def to_dict(self, expiring_window_hours=24):
        """Browser-facing projection; never includes token material or raw identifiers"""
        return {
            'id': self.id,
            'providerKey': self.provider_key,
            'organizationId': self.organization_id,
            'organizationName': self.organization_name,
            'baseUrl': self.base_url,
            'status': self.status,
            'capabilities': self.capabilities or {},
            'complianceFlags': self.compliance_flags,
            'grantedScope': self.token_scope,
            'syncEnabled': bool(self.sync_enabled),
            'lastSyncAt': _iso(self.last_sync_at),
            'lastSyncSuccess': self.last_sync_success,
            'lastSyncError': self.last_sync_error,
            'linkingCompletedAt': _iso(self.linking_completed_at),
            'createdAt': _iso(self.created_at),
            'tokenExpiresAt': _iso(self.token_expires_at),
            'isTokenExpired': self.status == 'active' and self.is_token_expired,
            'isTokenExpiring': self.status == 'active' and self.is_token_expiring(expiring_window_hours),
            'daysSinceLastSync': self.days_since_last_sync,
            'identityCount': len(self.identities),
        }

    def __repr__(self):
        return f'<LinkedProvider {self.id} {self.organization_name} ({self.status})>'


class PatientIdentity(db.Model):
    """Patient identifier known to a linked provider"""
    __tablename__ = 'fhir_patient_identities'

    id = db.Column(db.Integer, primary_key=True)
    linked_provider_id = db.Column(db.Integer, db.ForeignKey('fhir_linked_providers.id', ondelete='CASCADE'),
                                   nullable=False)
    system = db.Column(db.String(500))
    _value = db.Column('value', db.Text, nullable=False)  # Encrypted raw identifier
    hashed_value = db.Column(db.String(64), nullable=False, index=True)
    use = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @hybrid_property
    def value(self):
        """Get decrypted identifier value"""
        if not self._value:
            return None
        return decrypt_field(self._value)

    @value.setter
    def value(self, value):
        self._value = encrypt_field(value)

    def __repr__(self):
        return f'<PatientIdentity {self.hashed_value[:12]}>'


class UnifiedTimelineEntry(db.Model):
    """One normalized clinical event imported from a linked provider"""
    __tablename__ = 'fhir_timeline_entries'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    linked_provider_id = db.Column(db.Integer, db.ForeignKey('fhir_linked_providers.id', ondelete='CASCADE'),
                                   nullable=False)
    organization_name = db.Column(db.String(200))

    fhir_resource_type = db.Column(db.String(50), nullable=False)
    fhir_resource_id = db.Column(db.String(200), nullable=False)
    fhir_resource = db.Column(db.JSON)

    category = db.Column(db.String(20), nullable=False)
    effective_date = db.Column(db.DateTime, nullable=False)
    title = db.Column(db.String(500), nullable=False)
    summary = db.Column(db.Text)
    search_terms = db.Column(db.Text)  # Lowercased text used by timeline search
    tags = db.Column(db.JSON)

    synced_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('linked_provider_id', 'fhir_resource_type', 'fhir_resource_id',
                            name='uq_timeline_provider_resource'),
        db.Index('idx_timeline_user_effective', 'user_id', 'effective_date'),
        db.Index('idx_timeline_user_category', 'user_id', 'category'),
    )

    def to_dict(self, include_resource=True):
        result = {
            'id': self.id,
            'providerId': self.linked_provider_id,
            'organizationName': self.organization_name,
            'category': self.category,
            'title': self.title,
            'summary': self.summary,
            'effectiveDate': _iso(self.effective_date),
            'syncedAt': _iso(self.synced_at),
            'fhirResourceType': self.fhir_resource_type,
            'fhirResourceId': self.fhir_resource_id,
            'tags': self.tags or [],
        }
        if include_resource:
            result['fhirResource'] = self.fhir_resource
        return result

    def __repr__(self):
        return f'<UnifiedTimelineEntry {self.fhir_resource_type}/{self.fhir_resource_id}>'


class FHIRAuditLog(db.Model):
    """Append-only record of linking, token and data-access events"""
    __tablename__ = 'fhir_audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    linked_provider_id = db.Column(db.Integer, db.ForeignKey('fhir_linked_providers.id'))
    linking_session_id = db.Column(db.Integer)  # Sessions are deleted; keep the id only
    action = db.Column(db.String(30), nullable=False)
    resource = db.Column(db.String(200))
    success = db.Column(db.Boolean, nullable=False)
    error = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    event_metadata = db.Column('metadata', db.JSON)

    __table_args__ = (
        db.Index('idx_fhir_audit_user_action', 'user_id', 'action'),
        db.Index('idx_fhir_audit_provider', 'linked_provider_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': _iso(self.timestamp),
            'userId': self.user_id,
            'linkedProviderId': self.linked_provider_id,
            'linkingSessionId': self.linking_session_id,
            'action': self.action,
            'resource': self.resource,
            'success': self.success,
            'error': self.error,
            'metadata': self.event_metadata or {},
        }

    def __repr__(self):
        return f'<FHIRAuditLog {self.action} success={self.success}>'


class AuditLogImmutableError(Exception):
    """Raised when code tries to modify or delete an audit row"""
    pass


@event.listens_for(FHIRAuditLog, 'before_update')
def _block_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"FHIR audit log {target.id} is append-only")


@event.listens_for(FHIRAuditLog, 'before_delete')
def _block_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"FHIR audit log {target.id} is append-only")


class FHIRSyncJob(db.Model):
    """Background sync job tracked across the web process and the RQ worker"""
    __tablename__ = 'fhir_sync_jobs'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.String(64), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    linked_provider_id = db.Column(db.Integer, db.ForeignKey('fhir_linked_providers.id'))
    job_type = db.Column(db.String(20), nullable=False, default='full_sync')
    status = db.Column(db.String(20), nullable=False, default='pending')
    sync_params = db.Column(db.JSON)
    result = db.Column(db.JSON)
    error = db.Column(db.Text)

    scheduled_at = db.Column(db.DateTime, default=datetime.utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'jobId': self.job_id,
            'providerId': self.linked_provider_id,
            'jobType': self.job_type,
            'status': self.status,
            'syncParams': self.sync_params or {},
            'result': self.result,
            'error': self.error,
            'scheduledAt': _iso(self.scheduled_at),
            'startedAt': _iso(self.started_at),
            'completedAt': _iso(self.completed_at),
        }

    def __repr__(self):
        return f'<FHIRSyncJob {self.job_id} {self.status}>'
