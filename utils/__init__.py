# Utils package for the Remedara FHIR linking service

from .encryption import (
    encrypt_field,
    decrypt_field,
    get_encryption_service,
    hash_patient_id,
    EncryptionError
)

__all__ = [
    'encrypt_field',
    'decrypt_field',
    'get_encryption_service',
    'hash_patient_id',
    'EncryptionError'
]
