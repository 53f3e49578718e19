"""
Test suite for signature binding

Tests hashing primitives, binding and verification of signatures against
voucher contents, tamper detection, multi-signature packages and the
bound signature registry.
"""

import pytest
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from approval_engine.storage import InMemoryStorage
from approval_engine.audit import AuthorizationAuditTrail
from approval_engine.errors import ErrorCode, CryptoMismatchReason
from approval_engine.events import DomainEvent, EventDispatcher
from approval_engine.signatures import (
    SignatureBindingEngine, SignatureRegistry, SignatureData, SignatureType,
    BoundSignature, SignedVoucherPackage, canonical_json, generate_hash,
    hash_voucher, SIGNATURE_MISMATCH, VOUCHER_MISMATCH, BINDING_MISMATCH,
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage):
    return AuthorizationAuditTrail(storage)


@pytest.fixture
def registry(storage):
    return SignatureRegistry(storage)


@pytest.fixture
def engine(audit, registry):
    return SignatureBindingEngine(audit, registry=registry)


@pytest.fixture
def voucher():
    return {
        "voucherId": "WD-2024-0001",
        "voucherType": "withdrawal",
        "accountNumber": "1000123456789",
        "amount": "750000.00",
        "currency": "ETB",
        "customer": {"name": "Abebe Kebede", "segment": "normal"},
    }


def make_signature(actor_id="cust-1", role="Customer", payload="data:image/png;base64,iVBORw0KGgo="):
    return SignatureData(
        signature_payload=payload,
        actor_id=actor_id,
        actor_role=role,
        timestamp=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
    )


class TestHashing:
    """Test hashing primitives"""

    def test_canonical_json_sorts_nested_keys(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_voucher_hash_ignores_key_order(self):
        first = {"voucherId": "V1", "amount": "10", "meta": {"x": 1, "y": 2}}
        second = {"meta": {"y": 2, "x": 1}, "amount": "10", "voucherId": "V1"}

        assert hash_voucher(first) == hash_voucher(second)

    def test_decimal_serialized_as_string(self):
        assert canonical_json({"amount": Decimal("10.50")}) == '{"amount":"10.50"}'

    def test_known_digest(self):
        assert generate_hash("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_digest_lengths(self):
        assert len(generate_hash("abc", "SHA-384")) == 96
        assert len(generate_hash("abc", "SHA-512")) == 128
        assert len(generate_hash("abc", "SHA3-256")) == 64

    def test_weak_algorithm_rejected(self, audit):
        with pytest.raises(ValueError):
            generate_hash("abc", "MD5")
        with pytest.raises(ValueError):
            SignatureBindingEngine(audit, algorithm="SHA-1")


class TestBinding:
    """Test binding a signature to a voucher"""

    def test_bind_and_verify(self, engine, voucher):
        result = engine.bind_signature_to_voucher(make_signature(), voucher, SignatureType.CUSTOMER)

        assert result.success
        bound = result.value
        assert bound.voucher_id == "WD-2024-0001"
        assert bound.binding.algorithm == "SHA-256"
        assert len(bound.binding.binding_hash) == 64
        assert bound.binding.voucher_hash == hash_voucher(voucher)

        verification = engine.verify_binding(bound, voucher)
        assert verification.valid
        assert verification.reason is None
        assert verification.error is None

    def test_bind_is_audited(self, engine, audit, voucher):
        bound = engine.bind_signature_to_voucher(make_signature(), voucher, "customer").value

        logs = audit.get_signature_binding_logs(voucher_id="WD-2024-0001")
        assert len(logs) == 1
        assert logs[0].operation == "bind"
        assert logs[0].verified is True
        assert logs[0].voucher_type == "withdrawal"
        assert logs[0].binding_hash == bound.binding.binding_hash

    def test_same_signature_different_vouchers(self, engine, voucher):
        other = dict(voucher, voucherId="WD-2024-0002")
        first = engine.bind_signature_to_voucher(make_signature(), voucher, "customer").value
        second = engine.bind_signature_to_voucher(make_signature(), other, "customer").value

        assert first.binding.signature_hash == second.binding.signature_hash
        assert first.binding.binding_hash != second.binding.binding_hash
        assert not engine.verify_binding(first, other).valid

    @pytest.mark.parametrize("voucher_data,signature,signature_type,message", [
        ({"amount": "1"}, make_signature(), "customer", "Voucher must carry a voucherId"),
        ({"voucherId": "V1"}, None, "customer", "Signature data is required"),
        ({"voucherId": "V1"}, make_signature(actor_id=""), "customer", "Signature must carry an actor id"),
        ({"voucherId": "V1"}, make_signature(payload=""), "customer", "Signature payload is empty"),
        ({"voucherId": "V1"}, make_signature(), "notary", "Invalid signature type: notary"),
    ])
    def test_validation_failures(self, engine, audit, voucher_data, signature, signature_type, message):
        result = engine.bind_signature_to_voucher(signature, voucher_data, signature_type)

        assert not result.success
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.message == message
        assert audit.count("signature_binding") == 0

    def test_bound_signature_round_trip(self, engine, voucher):
        bound = engine.bind_signature_to_voucher(make_signature(), voucher, "teller").value

        restored = BoundSignature.from_dict(bound.to_dict())
        assert restored == bound
        assert engine.verify_binding(restored, voucher).valid


class TestVerification:
    """Test tamper detection"""

    @pytest.fixture
    def bound(self, engine, voucher):
        return engine.bind_signature_to_voucher(make_signature(), voucher, "customer").value

    def test_modified_voucher(self, engine, bound, voucher):
        tampered = dict(voucher, amount="7500000.00")

        verification = engine.verify_binding(bound, tampered)

        assert not verification.valid
        assert verification.reason == VOUCHER_MISMATCH
        assert verification.reason.startswith("Voucher hash mismatch")
        assert verification.error.code == ErrorCode.CRYPTO_MISMATCH
        assert verification.mismatch == CryptoMismatchReason.VOUCHER_MODIFIED

    def test_modified_nested_field(self, engine, bound, voucher):
        tampered = dict(voucher, customer={"name": "Abebe Kebede", "segment": "corporate"})

        assert engine.verify_binding(bound, tampered).mismatch == CryptoMismatchReason.VOUCHER_MODIFIED

    def test_reordered_voucher_still_valid(self, engine, bound, voucher):
        reordered = dict(reversed(list(voucher.items())))

        assert engine.verify_binding(bound, reordered).valid

    def test_tampered_signature_payload(self, engine, bound, voucher):
        tampered = replace(bound, signature_data="data:image/png;base64,Zm9yZ2Vk")

        verification = engine.verify_binding(tampered, voucher)
        assert verification.reason == SIGNATURE_MISMATCH
        assert verification.mismatch == CryptoMismatchReason.SIGNATURE_TAMPERED

    def test_tampered_signer(self, engine, bound, voucher):
        tampered = replace(bound, metadata=replace(bound.metadata, actor_id="cust-2"))

        assert engine.verify_binding(tampered, voucher).mismatch == CryptoMismatchReason.SIGNATURE_TAMPERED

    def test_tampered_binding_hash(self, engine, bound, voucher):
        tampered = replace(bound, binding=replace(bound.binding, binding_hash="0" * 64))

        verification = engine.verify_binding(tampered, voucher)
        assert verification.reason == BINDING_MISMATCH
        assert verification.mismatch == CryptoMismatchReason.BINDING_COMPROMISED

    def test_signature_checked_before_voucher(self, engine, bound, voucher):
        tampered = replace(bound, signature_data="forged")

        verification = engine.verify_binding(tampered, dict(voucher, amount="1"))
        assert verification.mismatch == CryptoMismatchReason.SIGNATURE_TAMPERED

    def test_each_verification_audited_once(self, engine, audit, bound, voucher):
        engine.verify_binding(bound, voucher)
        engine.verify_binding(bound, dict(voucher, amount="1"))

        verify_logs = [log for log in audit.get_signature_binding_logs() if log.operation == "verify"]
        assert len(verify_logs) == 2
        failed = audit.get_signature_binding_logs(verified=False)
        assert len(failed) == 1
        assert failed[0].failure_reason == VOUCHER_MISMATCH

    def test_verification_error_reported(self, engine, audit, bound):
        verification = engine.verify_binding(bound, ["not", "a", "voucher"])

        assert not verification.valid
        assert verification.reason.startswith("Verification error")
        assert verification.error is None

        failed = audit.get_signature_binding_logs(verified=False)
        assert len(failed) == 1
        assert failed[0].operation == "verify"
        assert failed[0].voucher_id == bound.voucher_id
        assert failed[0].failure_reason == verification.reason
        assert failed[0].binding_hash == bound.binding.binding_hash

    def test_unsupported_stored_algorithm_audited(self, engine, audit, bound, voucher):
        broken = replace(bound, binding=replace(bound.binding, algorithm="MD5"))

        verification = engine.verify_binding(broken, voucher)

        assert not verification.valid
        assert "Unsupported hash algorithm: MD5" in verification.reason
        failed = audit.get_signature_binding_logs(verified=False)
        assert [log.failure_reason for log in failed] == [verification.reason]

    def test_stored_algorithm_used(self, audit, voucher):
        strong = SignatureBindingEngine(audit, algorithm="SHA-512")
        default = SignatureBindingEngine(audit)
        bound = strong.bind_signature_to_voucher(make_signature(), voucher, "customer").value

        assert len(bound.binding.signature_hash) == 128
        assert default.verify_binding(bound, voucher).valid


class TestMultipleSignatures:
    """Test multi-party binding"""

    def signatures(self):
        return [
            (make_signature("cust-1", "Customer"), SignatureType.CUSTOMER),
            (make_signature("maker-1", "Maker"), SignatureType.TELLER),
            (make_signature("mgr-1", "Manager"), SignatureType.APPROVER),
        ]

    def test_bind_multiple(self, engine, voucher):
        result = engine.bind_multiple_signatures(self.signatures(), voucher)

        assert result.success
        assert [b.metadata.signature_type for b in result.value] == [
            SignatureType.CUSTOMER, SignatureType.TELLER, SignatureType.APPROVER,
        ]
        verification = engine.verify_all_bindings(result.value, voucher)
        assert verification.all_valid
        assert [r['signature_type'] for r in verification.results] == ["customer", "teller", "approver"]

    def test_nothing_bound_when_one_input_invalid(self, engine, audit, registry, voucher):
        signatures = self.signatures()
        signatures[2] = (make_signature("", "Manager"), SignatureType.APPROVER)

        result = engine.bind_multiple_signatures(signatures, voucher)

        assert not result.success
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert audit.count("signature_binding") == 0
        assert registry.get_for_voucher("WD-2024-0001") == []

    def test_verify_all_reports_each(self, engine, voucher):
        bound = engine.bind_multiple_signatures(self.signatures(), voucher).value
        bound[1] = replace(bound[1], signature_data="forged")

        verification = engine.verify_all_bindings(bound, voucher)
        assert not verification.all_valid
        assert [r['valid'] for r in verification.results] == [True, False, True]
        assert verification.results[1]['reason'] == SIGNATURE_MISMATCH


class TestSignedPackage:
    """Test sealed voucher packages"""

    def test_create_and_verify(self, engine, voucher):
        package = engine.create_signed_voucher_package(voucher, [
            (make_signature("cust-1", "Customer"), "customer"),
            (make_signature("mgr-1", "Manager"), "approver"),
        ]).value

        assert len(package.signatures) == 2
        result = engine.verify_signed_voucher_package(package)
        assert result.valid
        assert result.package_hash_valid
        assert result.signatures_valid

    def test_package_is_isolated_from_caller(self, engine, voucher):
        package = engine.create_signed_voucher_package(voucher, [(make_signature(), "customer")]).value
        voucher["amount"] = "1.00"

        assert engine.verify_signed_voucher_package(package).valid

    def test_package_round_trip(self, engine, voucher):
        package = engine.create_signed_voucher_package(voucher, [(make_signature(), "customer")]).value

        restored = SignedVoucherPackage.from_dict(package.to_dict())
        assert engine.verify_signed_voucher_package(restored).valid

    def test_tampered_package_hash(self, engine, voucher):
        package = engine.create_signed_voucher_package(voucher, [(make_signature(), "customer")]).value

        result = engine.verify_signed_voucher_package(replace(package, package_hash="f" * 64))
        assert not result.valid
        assert not result.package_hash_valid
        assert result.signatures_valid

    def test_tampered_package_voucher(self, engine, voucher):
        package = engine.create_signed_voucher_package(voucher, [(make_signature(), "customer")]).value

        result = engine.verify_signed_voucher_package(replace(package, voucher=dict(voucher, amount="1")))
        assert not result.package_hash_valid
        assert not result.signatures_valid
        assert result.details[0]['reason'] == VOUCHER_MISMATCH

    def test_invalid_input_creates_no_package(self, engine, voucher):
        result = engine.create_signed_voucher_package(voucher, [(make_signature(), "notary")])

        assert not result.success
        assert result.code == ErrorCode.VALIDATION_ERROR


class TestRegistry:
    """Test bound signature persistence"""

    def test_bound_signatures_saved(self, engine, registry, voucher):
        bound = engine.bind_multiple_signatures([
            (make_signature("cust-1", "Customer"), "customer"),
            (make_signature("maker-1", "Maker"), "teller"),
        ], voucher).value

        stored = registry.get_for_voucher("WD-2024-0001")
        assert sorted(b.binding.binding_hash for b in stored) == sorted(b.binding.binding_hash for b in bound)
        assert registry.get_for_voucher("WD-2024-9999") == []

    def test_engine_without_registry(self, audit, voucher):
        engine = SignatureBindingEngine(audit)

        assert engine.bind_signature_to_voucher(make_signature(), voucher, "customer").success


class TestSignatureEvents:
    """Test events published by the binding engine"""

    def test_bind_and_mismatch_events(self, audit, voucher):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.subscribe_all(received.append)
        engine = SignatureBindingEngine(audit, dispatcher=dispatcher)

        bound = engine.bind_signature_to_voucher(make_signature(), voucher, "customer").value
        engine.verify_binding(bound, voucher)
        engine.verify_binding(bound, dict(voucher, amount="1"))

        assert [e.event_type for e in received] == [
            DomainEvent.SIGNATURE_BOUND, DomainEvent.SIGNATURE_VERIFICATION_FAILED,
        ]
        assert received[0].entity_id == "WD-2024-0001"
        assert received[0].data["binding_hash"] == bound.binding.binding_hash
        assert received[1].data["mismatch"] == "voucher_modified"
