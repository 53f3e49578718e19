"""
Voucher Workflow State Machine

Legal voucher status transitions. Pure lookups only; the workflow engine
validates every approval action here before appending it.
"""

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Union


class VoucherStatus(Enum):
    """Voucher statuses in the approval workflow"""
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


WORKFLOW_TRANSITIONS: Mapping[VoucherStatus, FrozenSet[VoucherStatus]] = MappingProxyType({
    VoucherStatus.DRAFT: frozenset({VoucherStatus.PENDING_VERIFICATION}),
    VoucherStatus.PENDING_VERIFICATION: frozenset({
        VoucherStatus.VERIFIED,
        VoucherStatus.PENDING_APPROVAL,
        VoucherStatus.REJECTED,
    }),
    VoucherStatus.VERIFIED: frozenset({VoucherStatus.PENDING_APPROVAL, VoucherStatus.COMPLETED}),
    VoucherStatus.PENDING_APPROVAL: frozenset({VoucherStatus.APPROVED, VoucherStatus.REJECTED}),
    VoucherStatus.APPROVED: frozenset(),
    VoucherStatus.REJECTED: frozenset(),
    VoucherStatus.COMPLETED: frozenset(),
})

TERMINAL_STATUSES: FrozenSet[VoucherStatus] = frozenset({
    VoucherStatus.APPROVED,
    VoucherStatus.REJECTED,
    VoucherStatus.COMPLETED,
})

# Statuses in which a restricted set of roles is expected to act
AWAITING_ACTION_STATUSES: FrozenSet[VoucherStatus] = frozenset({
    VoucherStatus.PENDING_VERIFICATION,
    VoucherStatus.PENDING_APPROVAL,
})


def _coerce(status: Union[VoucherStatus, str, None]):
    if isinstance(status, VoucherStatus):
        return status
    try:
        return VoucherStatus(status)
    except ValueError:
        return None


def is_valid_transition(from_status: Union[VoucherStatus, str],
                        to_status: Union[VoucherStatus, str]) -> bool:
    """Check whether moving from one status to another is permitted"""
    source = _coerce(from_status)
    target = _coerce(to_status)
    if source is None or target is None:
        return False
    return target in WORKFLOW_TRANSITIONS.get(source, frozenset())


def allowed_transitions(from_status: Union[VoucherStatus, str]) -> FrozenSet[VoucherStatus]:
    """Statuses reachable in one step"""
    source = _coerce(from_status)
    if source is None:
        return frozenset()
    return WORKFLOW_TRANSITIONS.get(source, frozenset())


def is_terminal(status: Union[VoucherStatus, str]) -> bool:
    return _coerce(status) in TERMINAL_STATUSES
