"""
Tests for encryption at rest of captured signature payloads
"""

import pytest
from datetime import datetime, timezone

from approval_engine.storage import InMemoryStorage
from approval_engine.audit import AuthorizationAuditTrail
from approval_engine.encryption import (
    NoOpEncryptionProvider, FernetEncryptionProvider, AESGCMEncryptionProvider,
    EncryptedStorage, create_encryption_provider, ENCRYPTION_PREFIX,
)
from approval_engine.signatures import SignatureBindingEngine, SignatureRegistry, SignatureData


PAYLOAD = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUg=="


class TestProviders:
    """Test encryption providers"""

    @pytest.mark.parametrize("provider", [
        FernetEncryptionProvider("master-key"),
        AESGCMEncryptionProvider("master-key"),
    ])
    def test_round_trip(self, provider):
        ciphertext = provider.encrypt(PAYLOAD)

        assert ciphertext.startswith(ENCRYPTION_PREFIX)
        assert PAYLOAD not in ciphertext
        assert provider.decrypt(ciphertext) == PAYLOAD

    def test_aesgcm_nonce_varies(self):
        provider = AESGCMEncryptionProvider("master-key")

        assert provider.encrypt(PAYLOAD) != provider.encrypt(PAYLOAD)

    @pytest.mark.parametrize("provider_class", [FernetEncryptionProvider, AESGCMEncryptionProvider])
    def test_wrong_key_fails(self, provider_class):
        ciphertext = provider_class("right-key").encrypt(PAYLOAD)

        with pytest.raises(ValueError):
            provider_class("wrong-key").decrypt(ciphertext)

    def test_noop(self):
        provider = NoOpEncryptionProvider()

        assert provider.encrypt(PAYLOAD) == PAYLOAD
        assert provider.decrypt(PAYLOAD) == PAYLOAD

    def test_missing_key(self):
        with pytest.raises(ValueError):
            FernetEncryptionProvider("")


class TestProviderFactory:
    """Test create_encryption_provider"""

    def test_by_name(self):
        assert isinstance(create_encryption_provider("fernet", "k"), FernetEncryptionProvider)
        assert isinstance(create_encryption_provider("AESGCM", "k"), AESGCMEncryptionProvider)
        assert isinstance(create_encryption_provider("noop"), NoOpEncryptionProvider)

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("APPROVAL_ENCRYPTION_MASTER_KEY", "env-key")

        provider = create_encryption_provider("aesgcm")
        assert provider.decrypt(provider.encrypt("x")) == "x"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("APPROVAL_ENCRYPTION_MASTER_KEY", raising=False)

        with pytest.raises(ValueError):
            create_encryption_provider("fernet")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_encryption_provider("rot13", "k")


class TestEncryptedStorage:
    """Test transparent field encryption"""

    def setup_method(self):
        self.inner = InMemoryStorage()
        self.storage = EncryptedStorage(self.inner, FernetEncryptionProvider("master-key"))

    def test_sensitive_field_encrypted_at_rest(self):
        self.storage.save("bound_signatures", "b1", {"voucher_id": "V1", "signature_data": PAYLOAD})

        raw = self.inner.load("bound_signatures", "b1")
        assert raw["signature_data"].startswith(ENCRYPTION_PREFIX)
        assert raw["voucher_id"] == "V1"
        assert self.storage.load("bound_signatures", "b1")["signature_data"] == PAYLOAD

    def test_other_tables_untouched(self):
        self.storage.save("approval_workflows", "w1", {"voucher_id": "V1", "signature_data": PAYLOAD})

        assert self.inner.load("approval_workflows", "w1")["signature_data"] == PAYLOAD

    def test_find_on_plain_and_encrypted_fields(self):
        self.storage.save("bound_signatures", "b1", {"voucher_id": "V1", "signature_data": PAYLOAD})
        self.storage.save("bound_signatures", "b2", {"voucher_id": "V2", "signature_data": "other"})

        assert [r["signature_data"] for r in self.storage.find("bound_signatures", {"voucher_id": "V1"})] == [PAYLOAD]
        assert [r["voucher_id"] for r in self.storage.find("bound_signatures", {"signature_data": "other"})] == ["V2"]

    def test_undecryptable_value_left_as_is(self):
        self.inner.save("bound_signatures", "b1", {"voucher_id": "V1", "signature_data": "ENC:garbage"})

        assert self.storage.load("bound_signatures", "b1")["signature_data"] == "ENC:garbage"

    def test_stats(self):
        self.storage.save("bound_signatures", "b1", {"signature_data": PAYLOAD})
        self.storage.load("bound_signatures", "b1")

        assert self.storage.get_encryption_stats() == {"encrypt_count": 1, "decrypt_count": 1}

    def test_bound_signatures_verify_through_encrypted_registry(self):
        audit = AuthorizationAuditTrail(self.storage)
        engine = SignatureBindingEngine(audit, registry=SignatureRegistry(self.storage))
        voucher = {"voucherId": "V1", "amount": "100.00"}
        signature = SignatureData(PAYLOAD, "cust-1", "Customer", datetime.now(timezone.utc))

        engine.bind_signature_to_voucher(signature, voucher, "customer")

        stored = engine.registry.get_for_voucher("V1")
        assert stored[0].signature_data == PAYLOAD
        assert engine.verify_binding(stored[0], voucher).valid
        raw = self.inner.find("bound_signatures", {"voucher_id": "V1"})
        assert raw[0]["signature_data"].startswith(ENCRYPTION_PREFIX)
