"""
Encryption utilities for OAuth credentials and patient identifiers

Uses Fernet authenticated encryption (AES-128-CBC + HMAC-SHA256) for:
- Linked provider token bundles (access/refresh tokens, id_token)
- PKCE code verifiers held by pending linking sessions
- Raw patient identifiers collected from provider Patient resources

Encryption key(s) must be provided via the ENCRYPTION_KEY environment variable.
A comma-separated list enables key rotation: the first key encrypts, all keys decrypt.
Generate a key with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import os
import hmac
import json
import base64
import hashlib
import secrets
import logging
from dataclasses import dataclass
from typing import Any, Optional
from cryptography.fernet import Fernet, MultiFernet, InvalidToken

logger = logging.getLogger(__name__)

DEFAULT_PATIENT_ID_SALT = 'remedara-default-salt'


class EncryptionError(Exception):
    """Raised when encryption/decryption fails"""
    pass


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = 'S256'


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def pkce_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA-256(verifier)) with padding stripped"""
    return _b64url(hashlib.sha256(code_verifier.encode('ascii')).digest())


def generate_pkce() -> PKCEPair:
    """Generate a PKCE verifier (32 random bytes, base64url) and its S256 challenge"""
    verifier = _b64url(secrets.token_bytes(32))
    return PKCEPair(code_verifier=verifier, code_challenge=pkce_challenge(verifier))


def generate_state() -> str:
    """Generate an unguessable OAuth2 state value"""
    return secrets.token_urlsafe(32)


def hash_patient_id(value: str, salt: Optional[str] = None) -> str:
    """
    Deterministic keyed hash of a patient identifier

    Used for identity matching and audit lines without exposing the raw value.
    """
    salt = salt or os.environ.get('PATIENT_ID_SALT') or DEFAULT_PATIENT_ID_SALT
    return hmac.new(salt.encode('utf-8'), value.encode('utf-8'), hashlib.sha256).hexdigest()


class EncryptionService:
    """
    MultiFernet wrapper for token bundles, PKCE verifiers and other stored secrets.

    The first key in ENCRYPTION_KEY encrypts; every listed key may decrypt.
    """

    def __init__(self, keys: Optional[str] = None):
        self._cipher = None
        self._initialize_cipher(keys if keys is not None else os.environ.get('ENCRYPTION_KEY'))

    def _initialize_cipher(self, raw_keys: Optional[str]):
        """Build the MultiFernet from comma-separated keys, newest first"""
        if not raw_keys:
            logger.error(
                "ENCRYPTION_KEY not set - credential storage is unavailable. "
                "Generate a key with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
            return

        try:
            fernets = [Fernet(key.strip().encode()) for key in raw_keys.split(',') if key.strip()]
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to initialize encryption: {e}")
            raise EncryptionError(f"Invalid encryption key: {e}")

        self._cipher = MultiFernet(fernets)
        logger.info(f"Encryption service initialized with {len(fernets)} key(s)")

    def is_enabled(self) -> bool:
        """False when ENCRYPTION_KEY was absent at construction"""
        return self._cipher is not None

    def _require_cipher(self) -> MultiFernet:
        if self._cipher is None:
            raise EncryptionError("Encryption key is not configured")
        return self._cipher

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a plaintext string

        Args:
            plaintext: String to encrypt (can be None)

        Returns:
            Fernet token as a string, or None if input is None

        Raises:
            EncryptionError: If no key is configured
        """
        if plaintext is None:
            return None
        cipher = self._require_cipher()
        return cipher.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a Fernet token

        Raises:
            EncryptionError: If the token was tampered with, was produced under
                a different key, or no key is configured
        """
        if ciphertext is None:
            return None
        cipher = self._require_cipher()

        if not isinstance(ciphertext, (str, bytes)):
            raise EncryptionError(f"Invalid ciphertext type: {type(ciphertext).__name__}")
        if isinstance(ciphertext, str):
            ciphertext = ciphertext.encode('utf-8')

        try:
            return cipher.decrypt(ciphertext).decode('utf-8')
        except InvalidToken:
            logger.error("Fernet token rejected by every configured key")
            raise EncryptionError("Stored value could not be decrypted with the configured keys")

    def encrypt_json(self, payload: Any) -> str:
        return self.encrypt(json.dumps(payload, sort_keys=True))

    def decrypt_json(self, ciphertext: str) -> Any:
        plaintext = self.decrypt(ciphertext)
        if plaintext is None:
            return None
        try:
            return json.loads(plaintext)
        except ValueError:
            raise EncryptionError("Decrypted payload is not valid JSON")

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a token under the primary key"""
        cipher = self._require_cipher()
        try:
            return cipher.rotate(ciphertext.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            raise EncryptionError("Cannot rotate - token is invalid for all configured keys")


# Shared per process
_encryption_service = None


def get_encryption_service() -> EncryptionService:
    """Process-wide EncryptionService, created on first use"""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service


def reset_encryption_service():
    """Drop the cached service so the next call re-reads ENCRYPTION_KEY"""
    global _encryption_service
    _encryption_service = None


def encrypt_field(value: Optional[str]) -> Optional[str]:
    """Encrypt a column value with the shared service"""
    return get_encryption_service().encrypt(value)


def decrypt_field(value: Optional[str]) -> Optional[str]:
    """Decrypt a column value with the shared service"""
    return get_encryption_service().decrypt(value)
