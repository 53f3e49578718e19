"""
Role-Based Access Control (RBAC) Policy Module

Static role-to-permission matrix and monetary approval thresholds for branch
vouchers. The policy is validated once when loaded and never mutated at
runtime; all lookups are pure.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import (
    TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Mapping, Optional,
    Tuple, Union,
)

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import PolicyConfigurationError
from .state_machine import VoucherStatus, is_valid_transition as _is_valid_transition

if TYPE_CHECKING:
    from .audit import AuthorizationAuditTrail


class Role(Enum):
    """Branch staff and customer roles"""
    CUSTOMER = "Customer"
    MAKER = "Maker"
    MANAGER = "Manager"
    ADMIN = "Admin"
    AUDITOR = "Auditor"
    AUTHORIZER = "Authorizer"
    GREETER = "Greeter"


class Permission(Enum):
    """Fine-grained capability tags"""
    # Voucher permissions
    VOUCHER_CREATE = "voucher.create"
    VOUCHER_VIEW = "voucher.view"
    VOUCHER_EDIT = "voucher.edit"
    VOUCHER_DELETE = "voucher.delete"
    VOUCHER_APPROVE = "voucher.approve"
    VOUCHER_REJECT = "voucher.reject"
    VOUCHER_VERIFY = "voucher.verify"
    VOUCHER_FORWARD = "voucher.forward"
    VOUCHER_AUDIT = "voucher.audit"

    # Transaction permissions
    DEPOSIT_CREATE = "transaction.deposit.create"
    DEPOSIT_APPROVE = "transaction.deposit.approve"
    WITHDRAWAL_CREATE = "transaction.withdrawal.create"
    WITHDRAWAL_APPROVE = "transaction.withdrawal.approve"
    TRANSFER_CREATE = "transaction.transfer.create"
    TRANSFER_APPROVE = "transaction.transfer.approve"
    RTGS_CREATE = "transaction.rtgs.create"
    RTGS_APPROVE = "transaction.rtgs.approve"

    # Account permissions
    ACCOUNT_OPENING_CREATE = "account.opening.create"
    ACCOUNT_OPENING_APPROVE = "account.opening.approve"
    ACCOUNT_VIEW = "account.view"
    ACCOUNT_MODIFY = "account.modify"
    ACCOUNT_CLOSE = "account.close"

    # High-value transaction permissions
    HIGHVALUE_APPROVE = "highvalue.approve"
    FX_APPROVE = "fx.approve"
    LARGECASH_APPROVE = "largecash.approve"

    # User management permissions
    USER_CREATE = "user.create"
    USER_VIEW = "user.view"
    USER_EDIT = "user.edit"
    USER_DELETE = "user.delete"
    USER_ASSIGN_ROLE = "user.assignRole"

    # Branch and window management
    BRANCH_MANAGE = "branch.manage"
    WINDOW_ASSIGN = "window.assign"
    WINDOW_REASSIGN = "window.reassign"

    # Audit and reports
    AUDIT_VIEW = "audit.view"
    AUDIT_EXPORT = "audit.export"
    AUDIT_COMPLIANCE = "audit.compliance"
    AUDIT_TRANSACTIONS = "audit.transactions"
    REPORTS_GENERATE = "reports.generate"
    REPORTS_VIEW = "reports.view"

    # Stop payment and cheque services
    STOPPAYMENT_CREATE = "stoppayment.create"
    STOPPAYMENT_APPROVE = "stoppayment.approve"
    CHEQUE_REQUEST = "cheque.request"
    CHEQUE_APPROVE = "cheque.approve"

    # System administration
    SYSTEM_CONFIG = "system.config"
    SYSTEM_BACKUP = "system.backup"
    SYSTEM_RESTORE = "system.restore"

    # Authorization desk
    AUTHORIZATION_APPROVE = "authorization.approve"
    AUTHORIZATION_REJECT = "authorization.reject"
    AUTHORIZATION_REVIEW = "authorization.review"

    # Greeter desk
    CUSTOMER_GREET = "customer.greet"
    CUSTOMER_DIRECT = "customer.direct"
    QUEUE_MANAGE = "queue.manage"
    INFORMATION_PROVIDE = "information.provide"


class TransactionType(Enum):
    """Transaction types subject to amount thresholds"""
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    TRANSFER = "transfer"
    RTGS = "rtgs"


class CustomerSegment(Enum):
    """Customer segments with distinct limits"""
    NORMAL = "normal"
    CORPORATE = "corporate"


P = Permission

_CREATE_TRANSACTIONS = [P.DEPOSIT_CREATE, P.WITHDRAWAL_CREATE, P.TRANSFER_CREATE, P.RTGS_CREATE]
_APPROVE_TRANSACTIONS = [P.DEPOSIT_APPROVE, P.WITHDRAWAL_APPROVE, P.TRANSFER_APPROVE, P.RTGS_APPROVE]

DEFAULT_PERMISSIONS: Dict[Role, List[Permission]] = {
    Role.CUSTOMER: [
        P.VOUCHER_CREATE, P.VOUCHER_VIEW,
        *_CREATE_TRANSACTIONS,
        P.ACCOUNT_OPENING_CREATE, P.ACCOUNT_VIEW,
        P.STOPPAYMENT_CREATE, P.CHEQUE_REQUEST,
    ],
    Role.MAKER: [
        P.VOUCHER_CREATE, P.VOUCHER_VIEW, P.VOUCHER_EDIT, P.VOUCHER_VERIFY, P.VOUCHER_FORWARD,
        *_CREATE_TRANSACTIONS,
        P.ACCOUNT_OPENING_CREATE, P.ACCOUNT_VIEW, P.ACCOUNT_MODIFY,
        P.STOPPAYMENT_CREATE, P.CHEQUE_REQUEST,
        P.REPORTS_VIEW,
    ],
    Role.MANAGER: [
        P.VOUCHER_CREATE, P.VOUCHER_VIEW, P.VOUCHER_EDIT, P.VOUCHER_APPROVE,
        P.VOUCHER_REJECT, P.VOUCHER_VERIFY, P.VOUCHER_FORWARD,
        *_CREATE_TRANSACTIONS, *_APPROVE_TRANSACTIONS,
        P.ACCOUNT_OPENING_CREATE, P.ACCOUNT_OPENING_APPROVE,
        P.ACCOUNT_VIEW, P.ACCOUNT_MODIFY, P.ACCOUNT_CLOSE,
        P.HIGHVALUE_APPROVE, P.FX_APPROVE, P.LARGECASH_APPROVE,
        P.USER_VIEW, P.WINDOW_ASSIGN, P.WINDOW_REASSIGN,
        P.AUDIT_VIEW, P.REPORTS_GENERATE, P.REPORTS_VIEW,
        P.STOPPAYMENT_CREATE, P.STOPPAYMENT_APPROVE,
        P.CHEQUE_REQUEST, P.CHEQUE_APPROVE,
    ],
    Role.ADMIN: [
        P.VOUCHER_CREATE, P.VOUCHER_VIEW, P.VOUCHER_EDIT, P.VOUCHER_DELETE,
        P.VOUCHER_APPROVE, P.VOUCHER_REJECT, P.VOUCHER_VERIFY, P.VOUCHER_FORWARD,
        *_CREATE_TRANSACTIONS, *_APPROVE_TRANSACTIONS,
        P.ACCOUNT_OPENING_CREATE, P.ACCOUNT_OPENING_APPROVE,
        P.ACCOUNT_VIEW, P.ACCOUNT_MODIFY, P.ACCOUNT_CLOSE,
        P.HIGHVALUE_APPROVE, P.FX_APPROVE, P.LARGECASH_APPROVE,
        P.USER_CREATE, P.USER_VIEW, P.USER_EDIT, P.USER_DELETE, P.USER_ASSIGN_ROLE,
        P.BRANCH_MANAGE, P.WINDOW_ASSIGN, P.WINDOW_REASSIGN,
        P.AUDIT_VIEW, P.AUDIT_EXPORT, P.REPORTS_GENERATE, P.REPORTS_VIEW,
        P.STOPPAYMENT_CREATE, P.STOPPAYMENT_APPROVE,
        P.CHEQUE_REQUEST, P.CHEQUE_APPROVE,
        P.SYSTEM_CONFIG, P.SYSTEM_BACKUP, P.SYSTEM_RESTORE,
    ],
    Role.AUDITOR: [
        P.VOUCHER_VIEW, P.VOUCHER_AUDIT,
        *_CREATE_TRANSACTIONS,
        P.ACCOUNT_VIEW,
        P.AUDIT_VIEW, P.AUDIT_COMPLIANCE, P.AUDIT_TRANSACTIONS, P.AUDIT_EXPORT,
        P.REPORTS_VIEW, P.REPORTS_GENERATE,
    ],
    Role.AUTHORIZER: [
        P.VOUCHER_VIEW, P.VOUCHER_APPROVE, P.VOUCHER_REJECT,
        P.AUTHORIZATION_APPROVE, P.AUTHORIZATION_REJECT, P.AUTHORIZATION_REVIEW,
        *_APPROVE_TRANSACTIONS,
        P.HIGHVALUE_APPROVE, P.FX_APPROVE, P.LARGECASH_APPROVE,
        P.ACCOUNT_OPENING_APPROVE, P.STOPPAYMENT_APPROVE, P.CHEQUE_APPROVE,
        P.REPORTS_VIEW,
    ],
    Role.GREETER: [
        P.CUSTOMER_GREET, P.CUSTOMER_DIRECT, P.QUEUE_MANAGE, P.INFORMATION_PROVIDE,
        P.REPORTS_VIEW,
    ],
}

DEFAULT_BASE_THRESHOLDS: Dict[TransactionType, Dict[CustomerSegment, Decimal]] = {
    TransactionType.WITHDRAWAL: {
        CustomerSegment.NORMAL: Decimal("500000"),
        CustomerSegment.CORPORATE: Decimal("5000000"),
    },
    TransactionType.DEPOSIT: {
        CustomerSegment.NORMAL: Decimal("1000000"),
        CustomerSegment.CORPORATE: Decimal("10000000"),
    },
    TransactionType.TRANSFER: {
        CustomerSegment.NORMAL: Decimal("1000000"),
        CustomerSegment.CORPORATE: Decimal("10000000"),
    },
    TransactionType.RTGS: {
        CustomerSegment.NORMAL: Decimal("50000000"),
        CustomerSegment.CORPORATE: Decimal("100000000"),
    },
}

DEFAULT_FX_THRESHOLDS: Dict[str, Decimal] = {
    "USD": Decimal("5000"),
    "EUR": Decimal("4500"),
    "GBP": Decimal("4000"),
}

DEFAULT_APPROVER_ROLES: Tuple[Role, ...] = (Role.MANAGER, Role.ADMIN)


@dataclass(frozen=True)
class ApprovalThresholds:
    """Monetary limits above which a voucher needs manager-level approval"""
    base: Mapping[Tuple[TransactionType, CustomerSegment], Decimal]
    fx: Mapping[str, Decimal]
    base_currency: str = "ETB"

    def base_limit(self, transaction_type: TransactionType, segment: CustomerSegment) -> Optional[Decimal]:
        return self.base.get((transaction_type, segment))

    def fx_limit(self, currency: str) -> Optional[Decimal]:
        return self.fx.get(currency.upper())


@dataclass(frozen=True)
class ApprovalRequirement:
    """Outcome of a threshold evaluation"""
    required: bool
    reason: str = ""
    approver_roles: Tuple[Role, ...] = field(default_factory=tuple)


class PolicyConfig(BaseModel):
    """Load-time schema for policy configuration files"""
    base_currency: str = "ETB"
    permissions: Dict[str, List[str]]
    thresholds: Dict[str, Dict[str, Decimal]]
    fx_thresholds: Dict[str, Decimal] = Field(default_factory=dict)
    approver_roles: List[str] = Field(default_factory=lambda: [r.value for r in DEFAULT_APPROVER_ROLES])

    @field_validator("permissions")
    @classmethod
    def check_permissions(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for role_name, permission_names in value.items():
            Role(role_name)
            for permission_name in permission_names:
                Permission(permission_name)
        return value

    @field_validator("thresholds")
    @classmethod
    def check_thresholds(cls, value: Dict[str, Dict[str, Decimal]]) -> Dict[str, Dict[str, Decimal]]:
        for type_name, limits in value.items():
            TransactionType(type_name)
            for segment_name, limit in limits.items():
                CustomerSegment(segment_name)
                if limit < 0:
                    raise ValueError(f"Threshold for {type_name}/{segment_name} must not be negative")
        return value

    @field_validator("fx_thresholds")
    @classmethod
    def check_fx_thresholds(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for currency, limit in value.items():
            if len(currency) != 3 or not currency.isalpha():
                raise ValueError(f"Invalid currency code: {currency}")
            if limit < 0:
                raise ValueError(f"FX threshold for {currency} must not be negative")
        return {currency.upper(): limit for currency, limit in value.items()}

    @field_validator("approver_roles")
    @classmethod
    def check_approver_roles(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one approver role is required")
        for role_name in value:
            Role(role_name)
        return value


def _coerce_role(role: Union[Role, str, None]) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def _coerce_permission(permission: Union[Permission, str]) -> Optional[Permission]:
    if isinstance(permission, Permission):
        return permission
    try:
        return Permission(permission)
    except ValueError:
        return None


class PolicyModel:
    """Immutable RBAC matrix plus approval thresholds"""

    def __init__(self, permissions: Mapping[Role, Iterable[Permission]],
                 thresholds: ApprovalThresholds,
                 approver_roles: Iterable[Role] = DEFAULT_APPROVER_ROLES):
        self._matrix: Mapping[Role, FrozenSet[Permission]] = MappingProxyType(
            {role: frozenset(perms) for role, perms in permissions.items()}
        )
        self._thresholds = thresholds
        self._approver_roles = tuple(approver_roles)

    @classmethod
    def default(cls) -> 'PolicyModel':
        """Stock branch policy"""
        base = {
            (transaction_type, segment): limit
            for transaction_type, limits in DEFAULT_BASE_THRESHOLDS.items()
            for segment, limit in limits.items()
        }
        thresholds = ApprovalThresholds(
            base=MappingProxyType(base),
            fx=MappingProxyType(dict(DEFAULT_FX_THRESHOLDS)),
        )
        return cls(DEFAULT_PERMISSIONS, thresholds)

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> 'PolicyModel':
        """Build a policy from a plain mapping, validating it first"""
        try:
            parsed = PolicyConfig.model_validate(dict(data))
        except ValidationError as e:
            raise PolicyConfigurationError(f"Invalid policy configuration: {e}") from e

        permissions = {
            Role(role_name): [Permission(p) for p in permission_names]
            for role_name, permission_names in parsed.permissions.items()
        }
        base = {
            (TransactionType(type_name), CustomerSegment(segment_name)): limit
            for type_name, limits in parsed.thresholds.items()
            for segment_name, limit in limits.items()
        }
        thresholds = ApprovalThresholds(
            base=MappingProxyType(base),
            fx=MappingProxyType(dict(parsed.fx_thresholds)),
            base_currency=parsed.base_currency.upper(),
        )
        return cls(permissions, thresholds, [Role(r) for r in parsed.approver_roles])

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> 'PolicyModel':
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_config(json.load(handle))

    @property
    def thresholds(self) -> ApprovalThresholds:
        return self._thresholds

    @property
    def base_currency(self) -> str:
        return self._thresholds.base_currency

    @property
    def approver_roles(self) -> Tuple[Role, ...]:
        return self._approver_roles

    # Permission lookups

    def has_permission(self, role: Union[Role, str, None], permission: Union[Permission, str]) -> bool:
        """Exact membership in the matrix; unknown roles have no permissions"""
        resolved_role = _coerce_role(role)
        resolved_permission = _coerce_permission(permission)
        if resolved_role is None or resolved_permission is None:
            return False
        return resolved_permission in self._matrix.get(resolved_role, frozenset())

    def has_any_permission(self, role: Union[Role, str, None],
                           permissions: Iterable[Union[Permission, str]]) -> bool:
        return any(self.has_permission(role, p) for p in permissions)

    def has_all_permissions(self, role: Union[Role, str, None],
                            permissions: Iterable[Union[Permission, str]]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def get_role_permissions(self, role: Union[Role, str, None]) -> FrozenSet[Permission]:
        resolved_role = _coerce_role(role)
        if resolved_role is None:
            return frozenset()
        return self._matrix.get(resolved_role, frozenset())

    # Thresholds

    def requires_transaction_approval(
        self,
        transaction_type: Union[TransactionType, str],
        amount: Union[Decimal, int, float, str],
        currency: str = "ETB",
        customer_segment: Union[CustomerSegment, str] = CustomerSegment.NORMAL,
    ) -> ApprovalRequirement:
        """
        Decide whether a transaction needs manager approval.

        The foreign-currency limit is checked first and wins outright; the
        base limit for the transaction type and segment is only consulted
        when the FX check does not trigger.

        Raises:
            ValueError: unknown transaction type, segment or non-numeric amount
        """
        transaction_type = TransactionType(
            transaction_type.value if isinstance(transaction_type, TransactionType) else transaction_type
        )
        customer_segment = CustomerSegment(
            customer_segment.value if isinstance(customer_segment, CustomerSegment) else customer_segment
        )
        try:
            value = Decimal(str(amount))
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {amount}") from e
        currency = (currency or self.base_currency).upper()

        if currency != self.base_currency:
            fx_limit = self._thresholds.fx_limit(currency)
            if fx_limit is not None and value > fx_limit:
                return ApprovalRequirement(
                    required=True,
                    reason=f"Foreign exchange amount exceeds {currency} {fx_limit} threshold",
                    approver_roles=self._approver_roles,
                )

        limit = self._thresholds.base_limit(transaction_type, customer_segment)
        if limit is not None and value > limit:
            return ApprovalRequirement(
                required=True,
                reason=(
                    f"{transaction_type.value} amount exceeds {customer_segment.value} "
                    f"customer limit of {self.base_currency} {limit:,}"
                ),
                approver_roles=self._approver_roles,
            )

        return ApprovalRequirement(required=False, reason="", approver_roles=())

    def is_valid_transition(self, from_status: Union[VoucherStatus, str],
                            to_status: Union[VoucherStatus, str]) -> bool:
        return _is_valid_transition(from_status, to_status)


class PermissionChecker:
    """Permission checks for a resolved actor, optionally audit-logging denials"""

    def __init__(self, policy: PolicyModel, audit: Optional['AuthorizationAuditTrail'] = None):
        self.policy = policy
        self.audit = audit

    def can(self, actor_id: Optional[str], role: Union[Role, str, None],
            permission: Union[Permission, str], log_denial: bool = False) -> bool:
        resource = permission.value if isinstance(permission, Permission) else str(permission)
        return self._check(actor_id, role, self.policy.has_permission(role, permission),
                           resource, permission, log_denial)

    def can_any(self, actor_id: Optional[str], role: Union[Role, str, None],
                permissions: List[Union[Permission, str]], log_denial: bool = False) -> bool:
        resource = ",".join(p.value if isinstance(p, Permission) else str(p) for p in permissions)
        return self._check(actor_id, role, self.policy.has_any_permission(role, permissions),
                           resource, None, log_denial)

    def can_all(self, actor_id: Optional[str], role: Union[Role, str, None],
                permissions: List[Union[Permission, str]], log_denial: bool = False) -> bool:
        resource = ",".join(p.value if isinstance(p, Permission) else str(p) for p in permissions)
        return self._check(actor_id, role, self.policy.has_all_permissions(role, permissions),
                           resource, None, log_denial)

    def _check(self, actor_id, role, granted, resource, permission, log_denial) -> bool:
        resolved_role = _coerce_role(role)
        if resolved_role is None:
            granted = False
            denial_reason = "User not authenticated"
        else:
            denial_reason = f"Role {resolved_role.value} does not have {resource} permission"

        if not granted and log_denial and self.audit is not None:
            self.audit.log_authorization(
                user_id=actor_id or "anonymous",
                user_role=resolved_role.value if resolved_role else "",
                action="permission_check",
                resource=resource,
                granted=False,
                permission=permission.value if isinstance(permission, Permission) else permission,
                denial_reason=denial_reason,
            )
        return granted
