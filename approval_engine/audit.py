"""
Authorization Audit Trail Module

Append-only, bounded, hash-chained logs of authentication, authorization,
approval and signature-binding events for regulatory review.

Each category keeps its own chain: every entry stores the hash of the entry
before it, so any edit to a retained entry is detected by verify_integrity().
When a category exceeds its capacity the oldest entries are evicted first.
"""

import copy
import csv
import hashlib
import io
import json
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from .logging_config import get_logger
from .storage import StorageInterface, _json_default


logger = get_logger("approval_engine.audit")

AUDIT_TABLE = "audit_logs"
DEFAULT_MAX_ENTRIES = 5000


class AuditCategory(Enum):
    """Independent audit log categories"""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    APPROVAL = "approval"
    SIGNATURE_BINDING = "signature_binding"


class _ChainedEntry:
    """Hashing and (de)serialization shared by all audit entry types"""

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        data = dict(data)
        if isinstance(data.get('timestamp'), str):
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        if 'amount' in data and data['amount'] is not None:
            data['amount'] = Decimal(str(data['amount']))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except entry_hash itself"""
        hash_data = self.to_dict()
        hash_data.pop('entry_hash', None)
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=_json_default)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.entry_hash == self.calculate_hash()


@dataclass
class AuthenticationLog(_ChainedEntry):
    """Authentication attempt (PIN, OTP, password, biometric)"""
    id: str
    timestamp: datetime
    authentication_type: str
    success: bool
    user_id: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    session_id: Optional[str] = None
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""


@dataclass
class AuthorizationLog(_ChainedEntry):
    """Permission check or workflow authorization decision"""
    id: str
    timestamp: datetime
    user_id: str
    user_role: str
    action: str
    resource: str
    granted: bool
    permission: Optional[str] = None
    denial_reason: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""


@dataclass
class ApprovalLog(_ChainedEntry):
    """Verify, approve or reject action recorded against a voucher"""
    id: str
    timestamp: datetime
    approver_id: str
    approver_role: str
    voucher_id: str
    voucher_type: str
    action: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
    digital_signature: Optional[str] = None
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""


@dataclass
class SignatureBindingLog(_ChainedEntry):
    """Signature bound to a voucher, or the outcome of verifying a binding"""
    id: str
    timestamp: datetime
    voucher_id: str
    voucher_type: str
    signature_type: str
    user_id: str
    signature_hash: str
    voucher_hash: str
    binding_hash: str
    verified: bool
    operation: str = "bind"
    failure_reason: Optional[str] = None
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""


_ENTRY_TYPES: Dict[AuditCategory, Type[_ChainedEntry]] = {
    AuditCategory.AUTHENTICATION: AuthenticationLog,
    AuditCategory.AUTHORIZATION: AuthorizationLog,
    AuditCategory.APPROVAL: ApprovalLog,
    AuditCategory.SIGNATURE_BINDING: SignatureBindingLog,
}

_CSV_SECTIONS = [
    (AuditCategory.AUTHENTICATION, "AUTHENTICATION LOGS", [
        ("Timestamp", "timestamp"), ("User ID", "user_id"), ("Phone", "phone_number"),
        ("Email", "email"), ("Type", "authentication_type"), ("Success", "success"),
        ("Failure Reason", "failure_reason"), ("IP Address", "ip_address"),
        ("Session ID", "session_id"),
    ]),
    (AuditCategory.AUTHORIZATION, "AUTHORIZATION LOGS", [
        ("Timestamp", "timestamp"), ("User ID", "user_id"), ("Role", "user_role"),
        ("Action", "action"), ("Resource", "resource"), ("Permission", "permission"),
        ("Granted", "granted"), ("Denial Reason", "denial_reason"),
    ]),
    (AuditCategory.APPROVAL, "APPROVAL LOGS", [
        ("Timestamp", "timestamp"), ("Approver ID", "approver_id"), ("Role", "approver_role"),
        ("Voucher ID", "voucher_id"), ("Type", "voucher_type"), ("Action", "action"),
        ("Amount", "amount"), ("Currency", "currency"), ("Reason", "reason"),
    ]),
    (AuditCategory.SIGNATURE_BINDING, "SIGNATURE BINDING LOGS", [
        ("Timestamp", "timestamp"), ("Voucher ID", "voucher_id"), ("Type", "voucher_type"),
        ("Signature Type", "signature_type"), ("User ID", "user_id"),
        ("Signature Hash", "signature_hash"), ("Voucher Hash", "voucher_hash"),
        ("Binding Hash", "binding_hash"), ("Verified", "verified"),
    ]),
]


@dataclass
class AuditAnalytics:
    """Aggregate view over the retained audit window"""
    total_auth_attempts: int
    successful_auths: int
    failed_auths: int
    success_rate: float
    auth_by_type: Dict[str, int]
    total_authz_checks: int
    granted_authz: int
    denied_authz: int
    authz_success_rate: float
    common_denials: List[Dict[str, Any]]
    total_approvals: int
    approved_count: int
    rejected_count: int
    approvals_by_role: Dict[str, int]
    total_signature_bindings: int
    failed_signature_verifications: int
    recent_activity: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce_category(category: Union[AuditCategory, str]) -> AuditCategory:
    if isinstance(category, AuditCategory):
        return category
    return AuditCategory(category)


def _in_range(entry, start_date: Optional[datetime], end_date: Optional[datetime]) -> bool:
    if start_date and entry.timestamp < start_date:
        return False
    if end_date and entry.timestamp > end_date:
        return False
    return True


def _newest_first(entries: List[_ChainedEntry]) -> List[_ChainedEntry]:
    return sorted(entries, key=lambda e: (e.timestamp, e.sequence), reverse=True)


class AuthorizationAuditTrail:
    """
    Bounded, persistent, per-category audit trail.

    Appends within a category are serialized by that category's lock; reads
    return copies so callers never observe a log being trimmed under them.
    """

    def __init__(self, storage: StorageInterface, max_entries: int = DEFAULT_MAX_ENTRIES,
                 table_name: str = AUDIT_TABLE):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.storage = storage
        self.max_entries = max_entries
        self.table_name = table_name
        self._logs: Dict[AuditCategory, List[_ChainedEntry]] = {c: [] for c in AuditCategory}
        self._sequences: Dict[AuditCategory, int] = {c: 0 for c in AuditCategory}
        self._locks: Dict[AuditCategory, threading.Lock] = {c: threading.Lock() for c in AuditCategory}
        self._load_from_storage()

    def _restore(self, category: AuditCategory) -> None:
        snapshot = self.storage.load(self.table_name, category.value)
        entry_type = _ENTRY_TYPES[category]
        entries = [entry_type.from_dict(item) for item in (snapshot or {}).get('entries', [])]
        self._logs[category] = entries[-self.max_entries:]
        self._sequences[category] = entries[-1].sequence if entries else 0

    def _load_from_storage(self) -> None:
        """Restore every category snapshot from the durable store"""
        for category in AuditCategory:
            self._restore(category)
        logger.debug("Loaded audit trail from storage", extra={
            'extra_data': {c.value: len(self._logs[c]) for c in AuditCategory}
        })

    def reload(self) -> None:
        """Re-read every category from the store, dropping entries whose write was rolled back"""
        with self.storage.atomic():
            for category in AuditCategory:
                with self._locks[category]:
                    self._restore(category)

    def _persist(self, category: AuditCategory, entries: List[_ChainedEntry]) -> None:
        self.storage.save(self.table_name, category.value, {
            'category': category.value,
            'entries': [entry.to_dict() for entry in entries],
        })

    def _append(self, category: AuditCategory, entry_type: Type[_ChainedEntry], **values: Any):
        # store lock before category lock, the same order as callers inside storage.atomic()
        with self.storage.atomic(), self._locks[category]:
            log = self._logs[category]
            sequence = self._sequences[category] + 1
            entry = entry_type(
                id=str(uuid.uuid4()),
                timestamp=datetime.now(timezone.utc),
                sequence=sequence,
                previous_hash=log[-1].entry_hash if log else "",
                **values,
            )
            entry.entry_hash = entry.calculate_hash()

            updated = (log + [entry])[-self.max_entries:]
            self._persist(category, updated)
            self._logs[category] = updated
            self._sequences[category] = sequence
            return copy.deepcopy(entry)

    # Writes

    def log_authentication(self, authentication_type: str, success: bool,
                           user_id: Optional[str] = None, phone_number: Optional[str] = None,
                           email: Optional[str] = None, failure_reason: Optional[str] = None,
                           ip_address: Optional[str] = None, device_info: Optional[str] = None,
                           session_id: Optional[str] = None) -> AuthenticationLog:
        return self._append(
            AuditCategory.AUTHENTICATION, AuthenticationLog,
            authentication_type=authentication_type, success=success, user_id=user_id,
            phone_number=phone_number, email=email, failure_reason=failure_reason,
            ip_address=ip_address, device_info=device_info, session_id=session_id,
        )

    def log_authorization(self, user_id: str, user_role: str, action: str, resource: str,
                          granted: bool, permission: Optional[str] = None,
                          denial_reason: Optional[str] = None,
                          context: Optional[Dict[str, Any]] = None) -> AuthorizationLog:
        entry = self._append(
            AuditCategory.AUTHORIZATION, AuthorizationLog,
            user_id=user_id, user_role=user_role, action=action, resource=resource,
            granted=granted, permission=permission, denial_reason=denial_reason,
            context=json.loads(json.dumps(context or {}, default=_json_default)),
        )
        if not granted:
            logger.warning(f"Authorization denied for {user_id} ({user_role}) on {resource}: {denial_reason}")
        return entry

    def log_approval(self, approver_id: str, approver_role: str, voucher_id: str,
                     voucher_type: str, action: str, amount: Optional[Decimal] = None,
                     currency: Optional[str] = None, reason: Optional[str] = None,
                     digital_signature: Optional[str] = None) -> ApprovalLog:
        return self._append(
            AuditCategory.APPROVAL, ApprovalLog,
            approver_id=approver_id, approver_role=approver_role, voucher_id=voucher_id,
            voucher_type=voucher_type, action=action,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=currency, reason=reason, digital_signature=digital_signature,
        )

    def log_signature_binding(self, voucher_id: str, voucher_type: str, signature_type: str,
                              user_id: str, signature_hash: str, voucher_hash: str,
                              binding_hash: str, verified: bool, operation: str = "bind",
                              failure_reason: Optional[str] = None) -> SignatureBindingLog:
        return self._append(
            AuditCategory.SIGNATURE_BINDING, SignatureBindingLog,
            voucher_id=voucher_id, voucher_type=voucher_type, signature_type=signature_type,
            user_id=user_id, signature_hash=signature_hash, voucher_hash=voucher_hash,
            binding_hash=binding_hash, verified=verified, operation=operation,
            failure_reason=failure_reason,
        )

    # Reads

    def _snapshot(self, category: AuditCategory) -> List[_ChainedEntry]:
        with self._locks[category]:
            return [copy.deepcopy(entry) for entry in self._logs[category]]

    def get_authentication_logs(self, user_id: Optional[str] = None,
                                success: Optional[bool] = None,
                                authentication_type: Optional[str] = None,
                                start_date: Optional[datetime] = None,
                                end_date: Optional[datetime] = None) -> List[AuthenticationLog]:
        logs = self._snapshot(AuditCategory.AUTHENTICATION)
        return _newest_first([
            log for log in logs
            if (user_id is None or log.user_id == user_id)
            and (success is None or log.success == success)
            and (authentication_type is None or log.authentication_type == authentication_type)
            and _in_range(log, start_date, end_date)
        ])

    def get_authorization_logs(self, user_id: Optional[str] = None,
                               user_role: Optional[str] = None,
                               granted: Optional[bool] = None,
                               resource: Optional[str] = None,
                               start_date: Optional[datetime] = None,
                               end_date: Optional[datetime] = None) -> List[AuthorizationLog]:
        """Authorization entries; ``resource`` matches as a substring"""
        logs = self._snapshot(AuditCategory.AUTHORIZATION)
        return _newest_first([
            log for log in logs
            if (user_id is None or log.user_id == user_id)
            and (user_role is None or log.user_role == user_role)
            and (granted is None or log.granted == granted)
            and (resource is None or resource in log.resource)
            and _in_range(log, start_date, end_date)
        ])

    def get_approval_logs(self, approver_id: Optional[str] = None,
                          approver_role: Optional[str] = None,
                          voucher_id: Optional[str] = None,
                          action: Optional[str] = None,
                          start_date: Optional[datetime] = None,
                          end_date: Optional[datetime] = None) -> List[ApprovalLog]:
        logs = self._snapshot(AuditCategory.APPROVAL)
        return _newest_first([
            log for log in logs
            if (approver_id is None or log.approver_id == approver_id)
            and (approver_role is None or log.approver_role == approver_role)
            and (voucher_id is None or log.voucher_id == voucher_id)
            and (action is None or log.action == action)
            and _in_range(log, start_date, end_date)
        ])

    def get_signature_binding_logs(self, voucher_id: Optional[str] = None,
                                   user_id: Optional[str] = None,
                                   verified: Optional[bool] = None,
                                   start_date: Optional[datetime] = None,
                                   end_date: Optional[datetime] = None) -> List[SignatureBindingLog]:
        logs = self._snapshot(AuditCategory.SIGNATURE_BINDING)
        return _newest_first([
            log for log in logs
            if (voucher_id is None or log.voucher_id == voucher_id)
            and (user_id is None or log.user_id == user_id)
            and (verified is None or log.verified == verified)
            and _in_range(log, start_date, end_date)
        ])

    def count(self, category: Union[AuditCategory, str]) -> int:
        return len(self._snapshot(_coerce_category(category)))

    # Analytics and export

    def get_analytics(self, top_n: int = 10, recent_limit: int = 50) -> AuditAnalytics:
        """
        Summarize the retained window.

        Rates are percentages and are 0 when a category is empty. The recent
        activity feed merges all four categories, newest first.
        """
        snapshots = {c: self._snapshot(c) for c in AuditCategory}
        auth = snapshots[AuditCategory.AUTHENTICATION]
        authz = snapshots[AuditCategory.AUTHORIZATION]
        approvals = snapshots[AuditCategory.APPROVAL]
        bindings = snapshots[AuditCategory.SIGNATURE_BINDING]

        successful = sum(1 for log in auth if log.success)
        granted = sum(1 for log in authz if log.granted)
        denials = Counter(log.resource for log in authz if not log.granted)

        recent = []
        for category, entries in snapshots.items():
            for entry in entries:
                item = entry.to_dict()
                item['category'] = category.value
                recent.append((entry.timestamp, item))
        recent.sort(key=lambda pair: pair[0], reverse=True)

        return AuditAnalytics(
            total_auth_attempts=len(auth),
            successful_auths=successful,
            failed_auths=len(auth) - successful,
            success_rate=(successful / len(auth)) * 100 if auth else 0.0,
            auth_by_type=dict(Counter(log.authentication_type for log in auth)),
            total_authz_checks=len(authz),
            granted_authz=granted,
            denied_authz=len(authz) - granted,
            authz_success_rate=(granted / len(authz)) * 100 if authz else 0.0,
            common_denials=[
                {'resource': resource, 'count': count}
                for resource, count in denials.most_common(top_n)
            ],
            total_approvals=len(approvals),
            approved_count=sum(1 for log in approvals if log.action == 'approve'),
            rejected_count=sum(1 for log in approvals if log.action == 'reject'),
            approvals_by_role=dict(Counter(log.approver_role for log in approvals)),
            total_signature_bindings=len(bindings),
            failed_signature_verifications=sum(1 for log in bindings if not log.verified),
            recent_activity=[item for _, item in recent[:recent_limit]],
        )

    def export_logs(self, format: str = "json",
                    category: Optional[Union[AuditCategory, str]] = None) -> str:
        """
        Export retained logs for regulatory review.

        Args:
            format: "json" (one document keyed by category) or "csv"
                (one titled section per non-empty category)
            category: Restrict the export to a single category
        """
        selected = [_coerce_category(category)] if category is not None else list(AuditCategory)
        snapshots = {c: self._snapshot(c) if c in selected else [] for c in AuditCategory}

        if format == "json":
            data = {c.value: [entry.to_dict() for entry in snapshots[c]] for c in AuditCategory}
            data['exported_at'] = datetime.now(timezone.utc).isoformat()
            return json.dumps(data, indent=2, default=_json_default)

        if format != "csv":
            raise ValueError(f"Unsupported export format: {format}")

        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        for category, title, columns in _CSV_SECTIONS:
            entries = snapshots[category]
            if not entries:
                continue
            writer.writerow([title])
            writer.writerow([header for header, _ in columns])
            for entry in entries:
                row = entry.to_dict()
                writer.writerow(["" if row.get(key) is None else row.get(key) for _, key in columns])
            writer.writerow([])
        return output.getvalue()

    # Integrity

    def verify_integrity(self, category: Optional[Union[AuditCategory, str]] = None) -> Dict[str, Any]:
        """
        Recompute entry hashes and chain links over the retained window.

        The first retained entry of a trimmed category points at an evicted
        entry, so its previous_hash is not checked.
        """
        selected = [_coerce_category(category)] if category is not None else list(AuditCategory)
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        for cat in selected:
            entries = self._snapshot(cat)
            result['total_entries'] += len(entries)
            for i, entry in enumerate(entries):
                if not entry.verify_hash():
                    result['valid'] = False
                    result['hash_errors'].append({
                        'category': cat.value,
                        'entry_id': entry.id,
                        'sequence': entry.sequence,
                    })
                if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                    result['valid'] = False
                    result['chain_breaks'].append({
                        'category': cat.value,
                        'entry_id': entry.id,
                        'sequence': entry.sequence,
                    })

        if not result['valid']:
            logger.error("Audit trail integrity check failed", extra={'extra_data': {
                'hash_errors': len(result['hash_errors']),
                'chain_breaks': len(result['chain_breaks']),
            }})
        return result

    def clear_logs(self) -> None:
        """Drop every retained entry in every category (administrative use)"""
        with self.storage.atomic():
            for category in AuditCategory:
                with self._locks[category]:
                    self._persist(category, [])
                    self._logs[category] = []
                    self._sequences[category] = 0
        logger.warning("Audit trail cleared")
