"""
Signature Binding Module

Cryptographically binds captured signatures to voucher contents so that any
later change to either the signature or the voucher is detectable.

A binding stores three digests:
    signature_hash = H(canonical {signature, actorId, actorRole, timestamp})
    voucher_hash   = H(canonical voucher, keys sorted)
    binding_hash   = H("<signature_hash>:<voucher_hash>:<timestamp ISO-8601>")

Verification recomputes them in that order and stops at the first mismatch.
"""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .audit import AuthorizationAuditTrail
from .errors import CryptoMismatchReason, EngineError, ErrorCode, Result
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger
from .storage import StorageInterface, _json_default


logger = get_logger("approval_engine.signatures")

DEFAULT_ALGORITHM = "SHA-256"

# Display name -> hashlib name; nothing weaker than SHA-256
HASH_ALGORITHMS: Dict[str, str] = {
    "SHA-256": "sha256",
    "SHA-384": "sha384",
    "SHA-512": "sha512",
    "SHA3-256": "sha3_256",
}

SIGNATURE_MISMATCH = "Signature hash mismatch - signature may have been tampered with"
VOUCHER_MISMATCH = "Voucher hash mismatch - voucher data may have been modified"
BINDING_MISMATCH = "Binding hash mismatch - cryptographic binding may have been compromised"


class SignatureType(Enum):
    """Who signed the voucher"""
    CUSTOMER = "customer"
    TELLER = "teller"
    APPROVER = "approver"


@dataclass(frozen=True)
class SignatureData:
    """A captured signature (e.g. a base64 data URL from a signature pad)"""
    signature_payload: str
    actor_id: str
    actor_role: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signature_payload': self.signature_payload,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CryptographicBinding:
    signature_hash: str
    voucher_hash: str
    binding_hash: str
    timestamp: datetime
    algorithm: str = DEFAULT_ALGORITHM


@dataclass(frozen=True)
class SignatureMetadata:
    actor_id: str
    actor_role: str
    signature_type: SignatureType
    timestamp: datetime


@dataclass(frozen=True)
class BoundSignature:
    """A signature payload together with its binding to one voucher"""
    voucher_id: str
    signature_data: str
    binding: CryptographicBinding
    metadata: SignatureMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            'voucher_id': self.voucher_id,
            'signature_data': self.signature_data,
            'binding': {
                'signature_hash': self.binding.signature_hash,
                'voucher_hash': self.binding.voucher_hash,
                'binding_hash': self.binding.binding_hash,
                'timestamp': self.binding.timestamp.isoformat(),
                'algorithm': self.binding.algorithm,
            },
            'metadata': {
                'actor_id': self.metadata.actor_id,
                'actor_role': self.metadata.actor_role,
                'signature_type': self.metadata.signature_type.value,
                'timestamp': self.metadata.timestamp.isoformat(),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundSignature':
        binding = data['binding']
        metadata = data['metadata']
        return cls(
            voucher_id=data['voucher_id'],
            signature_data=data['signature_data'],
            binding=CryptographicBinding(
                signature_hash=binding['signature_hash'],
                voucher_hash=binding['voucher_hash'],
                binding_hash=binding['binding_hash'],
                timestamp=datetime.fromisoformat(binding['timestamp']),
                algorithm=binding.get('algorithm', DEFAULT_ALGORITHM),
            ),
            metadata=SignatureMetadata(
                actor_id=metadata['actor_id'],
                actor_role=metadata['actor_role'],
                signature_type=SignatureType(metadata['signature_type']),
                timestamp=datetime.fromisoformat(metadata['timestamp']),
            ),
        )


@dataclass(frozen=True)
class SignedVoucherPackage:
    """Voucher plus all its bound signatures, sealed by a package hash"""
    voucher: Dict[str, Any]
    signatures: Tuple[BoundSignature, ...]
    package_hash: str
    created_at: datetime
    algorithm: str = DEFAULT_ALGORITHM

    def to_dict(self) -> Dict[str, Any]:
        return {
            'voucher': json.loads(json.dumps(self.voucher, default=_json_default)),
            'signatures': [s.to_dict() for s in self.signatures],
            'package_hash': self.package_hash,
            'created_at': self.created_at.isoformat(),
            'algorithm': self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignedVoucherPackage':
        return cls(
            voucher=dict(data['voucher']),
            signatures=tuple(BoundSignature.from_dict(s) for s in data['signatures']),
            package_hash=data['package_hash'],
            created_at=datetime.fromisoformat(data['created_at']),
            algorithm=data.get('algorithm', DEFAULT_ALGORITHM),
        )


@dataclass
class VerificationResult:
    valid: bool
    reason: Optional[str] = None
    error: Optional[EngineError] = None

    @property
    def mismatch(self) -> Optional[CryptoMismatchReason]:
        if self.error is None or self.error.code != ErrorCode.CRYPTO_MISMATCH:
            return None
        return self.error.context.get('mismatch')


@dataclass
class MultiVerificationResult:
    all_valid: bool
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PackageVerificationResult:
    valid: bool
    package_hash_valid: bool
    signatures_valid: bool
    details: List[Dict[str, Any]] = field(default_factory=list)


# Hashing primitives

def canonical_json(obj: Any) -> str:
    """Compact JSON with recursively sorted keys; Decimal/datetime/Enum as strings"""
    return json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False,
                      default=_json_default)


def generate_hash(data: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Lowercase hex digest of a UTF-8 string"""
    try:
        name = HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}") from None
    return hashlib.new(name, data.encode('utf-8')).hexdigest()


def hash_signature(signature: SignatureData, algorithm: str = DEFAULT_ALGORITHM) -> str:
    return generate_hash(canonical_json({
        'signature': signature.signature_payload,
        'actorId': signature.actor_id,
        'actorRole': signature.actor_role,
        'timestamp': signature.timestamp.isoformat(),
    }), algorithm)


def hash_voucher(voucher: Mapping[str, Any], algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Digest of the voucher contents; independent of key order"""
    return generate_hash(canonical_json(dict(voucher)), algorithm)


def compute_binding_hash(signature_hash: str, voucher_hash: str, timestamp: datetime,
                         algorithm: str = DEFAULT_ALGORITHM) -> str:
    return generate_hash(f"{signature_hash}:{voucher_hash}:{timestamp.isoformat()}", algorithm)


def _package_hash(voucher: Mapping[str, Any], signatures: Iterable[BoundSignature],
                  created_at: datetime, algorithm: str) -> str:
    return generate_hash(canonical_json({
        'voucher': dict(voucher),
        'signatures': [
            {
                'signatureType': s.metadata.signature_type.value,
                'bindingHash': s.binding.binding_hash,
            }
            for s in signatures
        ],
        'createdAt': created_at.isoformat(),
    }), algorithm)


class SignatureRegistry:
    """Durable store of bound signatures, keyed by binding hash"""

    def __init__(self, storage: StorageInterface, table_name: str = "bound_signatures"):
        self.storage = storage
        self.table_name = table_name

    def save(self, bound: BoundSignature) -> None:
        self.storage.save(self.table_name, bound.binding.binding_hash, bound.to_dict())

    def get_for_voucher(self, voucher_id: str) -> List[BoundSignature]:
        records = self.storage.find(self.table_name, {'voucher_id': voucher_id})
        return [BoundSignature.from_dict(r) for r in records]


SignatureInput = Tuple[SignatureData, Union[SignatureType, str]]


class SignatureBindingEngine:
    """
    Binds signatures to vouchers and verifies those bindings later.

    Every bind and every verification outcome is written to the signature
    binding audit log.
    """

    def __init__(self, audit: AuthorizationAuditTrail, algorithm: str = DEFAULT_ALGORITHM,
                 registry: Optional[SignatureRegistry] = None,
                 dispatcher: Optional[EventDispatcher] = None):
        if algorithm not in HASH_ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        self.audit = audit
        self.algorithm = algorithm
        self.registry = registry
        self.dispatcher = dispatcher

    def _publish(self, event_type: DomainEvent, voucher_id: str, **data: Any) -> None:
        if self.dispatcher is not None:
            self.dispatcher.publish(EventPayload(
                event_type=event_type,
                entity_type="voucher",
                entity_id=voucher_id,
                data=dict(data, voucher_id=voucher_id),
            ))

    @staticmethod
    def _validate(signature: Any, voucher: Any,
                  signature_type: Any) -> Tuple[Optional[Result], Optional[SignatureType]]:
        if not isinstance(voucher, Mapping) or not voucher.get('voucherId'):
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Voucher must carry a voucherId"), None
        if not isinstance(signature, SignatureData):
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Signature data is required"), None
        if not signature.actor_id:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Signature must carry an actor id"), None
        if not signature.signature_payload:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Signature payload is empty"), None
        if not isinstance(signature.timestamp, datetime):
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Signature timestamp is required"), None
        try:
            resolved = signature_type if isinstance(signature_type, SignatureType) else SignatureType(signature_type)
        except ValueError:
            return Result.fail(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid signature type: {signature_type}",
                signature_type=str(signature_type),
            ), None
        return None, resolved

    def _bind(self, signature: SignatureData, voucher: Mapping[str, Any],
              signature_type: SignatureType) -> BoundSignature:
        signature_hash = hash_signature(signature, self.algorithm)
        voucher_hash = hash_voucher(voucher, self.algorithm)
        binding_hash = compute_binding_hash(signature_hash, voucher_hash, signature.timestamp, self.algorithm)

        bound = BoundSignature(
            voucher_id=str(voucher['voucherId']),
            signature_data=signature.signature_payload,
            binding=CryptographicBinding(
                signature_hash=signature_hash,
                voucher_hash=voucher_hash,
                binding_hash=binding_hash,
                timestamp=datetime.now(timezone.utc),
                algorithm=self.algorithm,
            ),
            metadata=SignatureMetadata(
                actor_id=signature.actor_id,
                actor_role=signature.actor_role,
                signature_type=signature_type,
                timestamp=signature.timestamp,
            ),
        )

        self.audit.log_signature_binding(
            voucher_id=bound.voucher_id,
            voucher_type=str(voucher.get('voucherType', '')),
            signature_type=signature_type.value,
            user_id=signature.actor_id,
            signature_hash=signature_hash,
            voucher_hash=voucher_hash,
            binding_hash=binding_hash,
            verified=True,
            operation="bind",
        )
        if self.registry is not None:
            self.registry.save(bound)
        self._publish(DomainEvent.SIGNATURE_BOUND, bound.voucher_id,
                      signature_type=signature_type.value, actor_id=signature.actor_id,
                      binding_hash=binding_hash)

        logger.info(f"Bound {signature_type.value} signature to voucher {bound.voucher_id}")
        return bound

    def bind_signature_to_voucher(self, signature: SignatureData, voucher: Mapping[str, Any],
                                  signature_type: Union[SignatureType, str]) -> Result[BoundSignature]:
        failure, resolved = self._validate(signature, voucher, signature_type)
        if failure is not None:
            return failure
        return Result.ok(self._bind(signature, voucher, resolved), "Signature bound to voucher")

    def verify_binding(self, bound: BoundSignature, current_voucher: Mapping[str, Any]) -> VerificationResult:
        """
        Check a binding against the voucher as it is now.

        Checks run signature, then voucher, then binding; the first mismatch
        is reported and audited. A voucher or binding that cannot be hashed
        at all is audited as a failed verification too.
        """
        algorithm = bound.binding.algorithm
        if isinstance(current_voucher, Mapping):
            voucher_id = str(current_voucher.get('voucherId', bound.voucher_id))
            voucher_type = str(current_voucher.get('voucherType', ''))
        else:
            voucher_id, voucher_type = bound.voucher_id, ''

        def audit(signature_hash, voucher_hash, binding_hash, verified, reason=None):
            self.audit.log_signature_binding(
                voucher_id=voucher_id,
                voucher_type=voucher_type,
                signature_type=bound.metadata.signature_type.value,
                user_id=bound.metadata.actor_id,
                signature_hash=signature_hash,
                voucher_hash=voucher_hash,
                binding_hash=binding_hash,
                verified=verified,
                operation="verify",
                failure_reason=reason,
            )

        try:
            computed_signature_hash = hash_signature(SignatureData(
                signature_payload=bound.signature_data,
                actor_id=bound.metadata.actor_id,
                actor_role=bound.metadata.actor_role,
                timestamp=bound.metadata.timestamp,
            ), algorithm)
            if computed_signature_hash != bound.binding.signature_hash:
                audit(computed_signature_hash, bound.binding.voucher_hash, bound.binding.binding_hash,
                      False, SIGNATURE_MISMATCH)
                return self._mismatch(SIGNATURE_MISMATCH, CryptoMismatchReason.SIGNATURE_TAMPERED, voucher_id)

            computed_voucher_hash = hash_voucher(current_voucher, algorithm)
            if computed_voucher_hash != bound.binding.voucher_hash:
                audit(computed_signature_hash, computed_voucher_hash, bound.binding.binding_hash,
                      False, VOUCHER_MISMATCH)
                return self._mismatch(VOUCHER_MISMATCH, CryptoMismatchReason.VOUCHER_MODIFIED, voucher_id)

            computed_binding_hash = compute_binding_hash(
                computed_signature_hash, computed_voucher_hash, bound.metadata.timestamp, algorithm
            )
        except (AttributeError, TypeError, ValueError) as e:
            reason = f"Verification error: {e}"
            logger.warning(f"Could not verify signature binding for voucher {voucher_id}: {e}")
            audit(bound.binding.signature_hash, bound.binding.voucher_hash, bound.binding.binding_hash,
                  False, reason)
            return VerificationResult(valid=False, reason=reason)

        if computed_binding_hash != bound.binding.binding_hash:
            audit(computed_signature_hash, computed_voucher_hash, computed_binding_hash,
                  False, BINDING_MISMATCH)
            return self._mismatch(BINDING_MISMATCH, CryptoMismatchReason.BINDING_COMPROMISED, voucher_id)

        audit(computed_signature_hash, computed_voucher_hash, computed_binding_hash, True)
        return VerificationResult(valid=True)

    def _mismatch(self, reason: str, mismatch: CryptoMismatchReason, voucher_id: str) -> VerificationResult:
        logger.warning(f"Signature verification failed for voucher {voucher_id}: {mismatch.value}")
        self._publish(DomainEvent.SIGNATURE_VERIFICATION_FAILED, voucher_id,
                      mismatch=mismatch.value, reason=reason)
        return VerificationResult(
            valid=False,
            reason=reason,
            error=EngineError(ErrorCode.CRYPTO_MISMATCH, reason, {
                'mismatch': mismatch,
                'voucher_id': voucher_id,
            }),
        )

    def bind_multiple_signatures(self, signatures: Iterable[SignatureInput],
                                 voucher: Mapping[str, Any]) -> Result[List[BoundSignature]]:
        """Bind several signatures (e.g. customer, teller, approver); nothing is bound if any input is invalid"""
        signatures = list(signatures)
        resolved_types = []
        for signature, signature_type in signatures:
            failure, resolved = self._validate(signature, voucher, signature_type)
            if failure is not None:
                return failure
            resolved_types.append(resolved)

        bound = [
            self._bind(signature, voucher, resolved)
            for (signature, _), resolved in zip(signatures, resolved_types)
        ]
        return Result.ok(bound, f"Bound {len(bound)} signatures")

    def verify_all_bindings(self, bound_signatures: Iterable[BoundSignature],
                            current_voucher: Mapping[str, Any]) -> MultiVerificationResult:
        results = []
        for bound in bound_signatures:
            verification = self.verify_binding(bound, current_voucher)
            results.append({
                'signature_type': bound.metadata.signature_type.value,
                'valid': verification.valid,
                'reason': verification.reason,
            })
        return MultiVerificationResult(all_valid=all(r['valid'] for r in results), results=results)

    def create_signed_voucher_package(self, voucher: Mapping[str, Any],
                                      signatures: Iterable[SignatureInput]) -> Result[SignedVoucherPackage]:
        bound_result = self.bind_multiple_signatures(signatures, voucher)
        if not bound_result.success:
            return bound_result

        voucher_copy = copy.deepcopy(dict(voucher))
        created_at = datetime.now(timezone.utc)
        package = SignedVoucherPackage(
            voucher=voucher_copy,
            signatures=tuple(bound_result.value),
            package_hash=_package_hash(voucher_copy, bound_result.value, created_at, self.algorithm),
            created_at=created_at,
            algorithm=self.algorithm,
        )
        return Result.ok(package, "Signed voucher package created")

    def verify_signed_voucher_package(self, package: SignedVoucherPackage) -> PackageVerificationResult:
        computed = _package_hash(package.voucher, package.signatures, package.created_at, package.algorithm)
        package_hash_valid = computed == package.package_hash
        verification = self.verify_all_bindings(package.signatures, package.voucher)
        if not package_hash_valid:
            logger.warning(f"Package hash mismatch for voucher {package.voucher.get('voucherId')}")
        return PackageVerificationResult(
            valid=package_hash_valid and verification.all_valid,
            package_hash_valid=package_hash_valid,
            signatures_valid=verification.all_valid,
            details=verification.results,
        )
