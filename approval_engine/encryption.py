"""
Encryption at Rest Module

Field-level encryption for sensitive values (captured signature payloads)
that is transparent to the rest of the engine. Uses the cryptography library
(Fernet or AES-GCM); the NoOp provider is for development only.
"""

import os
import base64
import hashlib
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .logging_config import get_logger
from .storage import StorageInterface

logger = get_logger("approval_engine.encryption")


# Sensitive field definitions per table
SENSITIVE_FIELDS: Dict[str, List[str]] = {
    "bound_signatures": ["signature_data"],
    "audit_logs": [],  # Never encrypt the audit trail; its hashes cover plaintext
}

ENCRYPTION_PREFIX = "ENC:"


class EncryptionProvider(ABC):
    """Abstract base class for encryption providers"""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        pass


class NoOpEncryptionProvider(EncryptionProvider):
    """Pass-through provider for development and testing"""

    def __init__(self):
        logger.info("Using NoOpEncryptionProvider - data will NOT be encrypted")

    def encrypt(self, plaintext: str) -> str:
        return str(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        return str(ciphertext)


class FernetEncryptionProvider(EncryptionProvider):
    """Fernet (AES-128-CBC + HMAC-SHA256) with a PBKDF2-derived key"""

    def __init__(self, master_key: str, salt: Optional[bytes] = None):
        if not master_key:
            raise ValueError("A master key is required for Fernet encryption")
        self.salt = salt or b'approval_engine_signature_salt'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=100000,
        )
        derived_key = kdf.derive(master_key.encode('utf-8'))
        self.fernet = Fernet(base64.urlsafe_b64encode(derived_key))

    def encrypt(self, plaintext: str) -> str:
        token = self.fernet.encrypt(str(plaintext).encode('utf-8'))
        return f"{ENCRYPTION_PREFIX}{token.decode('ascii')}"

    def decrypt(self, ciphertext: str) -> str:
        ciphertext = str(ciphertext)
        if ciphertext.startswith(ENCRYPTION_PREFIX):
            ciphertext = ciphertext[len(ENCRYPTION_PREFIX):]
        try:
            return self.fernet.decrypt(ciphertext.encode('ascii')).decode('utf-8')
        except Exception as e:
            raise ValueError(f"Failed to decrypt data: {e}") from e


class AESGCMEncryptionProvider(EncryptionProvider):
    """AES-256-GCM with a random 12-byte nonce prepended to each ciphertext"""

    def __init__(self, master_key: Union[str, bytes]):
        if not master_key:
            raise ValueError("A master key is required for AES-GCM encryption")
        if isinstance(master_key, str):
            master_key = master_key.encode('utf-8')
        self.aesgcm = AESGCM(hashlib.sha256(master_key).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(12)
        encrypted = self.aesgcm.encrypt(nonce, str(plaintext).encode('utf-8'), None)
        encoded = base64.urlsafe_b64encode(nonce + encrypted).decode('ascii')
        return f"{ENCRYPTION_PREFIX}{encoded}"

    def decrypt(self, ciphertext: str) -> str:
        ciphertext = str(ciphertext)
        if ciphertext.startswith(ENCRYPTION_PREFIX):
            ciphertext = ciphertext[len(ENCRYPTION_PREFIX):]
        try:
            combined = base64.urlsafe_b64decode(ciphertext.encode('ascii'))
            return self.aesgcm.decrypt(combined[:12], combined[12:], None).decode('utf-8')
        except Exception as e:
            raise ValueError(f"Failed to decrypt data: {e}") from e


class EncryptedStorage(StorageInterface):
    """
    Storage wrapper that encrypts configured fields on save and decrypts on load.
    Filters on encrypted fields are applied in memory after decryption.
    """

    def __init__(self, inner: StorageInterface, encryption_provider: EncryptionProvider,
                 sensitive_fields: Optional[Dict[str, List[str]]] = None):
        super().__init__()
        self.inner = inner
        self.provider = encryption_provider
        self.sensitive_fields = sensitive_fields if sensitive_fields is not None else SENSITIVE_FIELDS
        self._encrypt_count = 0
        self._decrypt_count = 0
        logger.info(f"EncryptedStorage initialized with {type(encryption_provider).__name__}")

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self.inner.save(table, record_id, self._encrypt_fields(table, dict(data)))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        data = self.inner.load(table, record_id)
        return self._decrypt_fields(table, data) if data else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return [self._decrypt_fields(table, data) for data in self.inner.load_all(table)]

    def delete(self, table: str, record_id: str) -> bool:
        return self.inner.delete(table, record_id)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        sensitive = set(self.sensitive_fields.get(table, []))
        plain_filters = {k: v for k, v in filters.items() if k not in sensitive}
        encrypted_filters = {k: v for k, v in filters.items() if k in sensitive}

        results = self.inner.find(table, plain_filters) if plain_filters else self.inner.load_all(table)
        decrypted = [self._decrypt_fields(table, data) for data in results]

        if not encrypted_filters:
            return decrypted
        return [
            record for record in decrypted
            if all(record.get(key) == value for key, value in encrypted_filters.items())
        ]

    def count(self, table: str) -> int:
        return self.inner.count(table)

    def close(self) -> None:
        self.inner.close()

    @property
    def in_transaction(self) -> bool:
        return self.inner.in_transaction

    def atomic(self):
        return self.inner.atomic()

    def _encrypt_fields(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        for field in self.sensitive_fields.get(table, []):
            value = data.get(field)
            if value is not None and not self._is_encrypted(value):
                data[field] = self.provider.encrypt(str(value))
                self._encrypt_count += 1
        return data

    def _decrypt_fields(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        decrypted = dict(data)
        for field in self.sensitive_fields.get(table, []):
            value = decrypted.get(field)
            if value is not None and self._is_encrypted(value):
                try:
                    decrypted[field] = self.provider.decrypt(value)
                    self._decrypt_count += 1
                except ValueError as e:
                    # Leave the ciphertext in place; signature verification will reject it
                    logger.error(f"Failed to decrypt field {field} in table {table}: {e}")
        return decrypted

    @staticmethod
    def _is_encrypted(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTION_PREFIX)

    def get_encryption_stats(self) -> Dict[str, int]:
        return {
            "encrypt_count": self._encrypt_count,
            "decrypt_count": self._decrypt_count
        }


def create_encryption_provider(provider_type: str = "fernet",
                               master_key: Optional[str] = None) -> EncryptionProvider:
    """
    Build an encryption provider by name.

    Args:
        provider_type: "fernet", "aesgcm" or "noop"
        master_key: Key material; falls back to APPROVAL_ENCRYPTION_MASTER_KEY
    """
    provider_type = provider_type.lower()
    if provider_type == "noop":
        return NoOpEncryptionProvider()

    master_key = master_key or os.getenv("APPROVAL_ENCRYPTION_MASTER_KEY", "")
    if not master_key:
        raise ValueError(f"A master key is required for the {provider_type} provider")

    if provider_type == "fernet":
        return FernetEncryptionProvider(master_key)
    if provider_type == "aesgcm":
        return AESGCMEncryptionProvider(master_key)
    raise ValueError(f"Unknown encryption provider: {provider_type}")
