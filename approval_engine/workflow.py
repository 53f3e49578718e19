"""
Approval Workflow Engine Module

One approval workflow per voucher. A workflow is created when a voucher is
submitted, evaluated against the approval thresholds, and then moved through
verify / approve / reject actions by authorized staff. Every action is
appended to the workflow's approval chain, audited, published as a domain
event and forwarded to the branch backend through the outbound queue.
"""

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .audit import AuthorizationAuditTrail
from .errors import ErrorCode, Result
from .events import DomainEvent, EventDispatcher, create_workflow_event
from .logging_config import get_logger, log_action
from .policy import CustomerSegment, PolicyModel, Role, TransactionType
from .state_machine import (
    AWAITING_ACTION_STATUSES, TERMINAL_STATUSES, VoucherStatus, is_valid_transition,
)
from .storage import StorageInterface, StorageRecord
from .sync import OutboundSyncQueue


logger = get_logger("approval_engine.workflow")

WORKFLOW_TABLE = "approval_workflows"


class VoucherType(Enum):
    """Kinds of branch vouchers that can enter an approval workflow"""
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    TRANSFER = "transfer"
    RTGS = "rtgs"
    ACCOUNT_OPENING = "account_opening"
    STOP_PAYMENT = "stop_payment"
    OTHER = "other"


class ActionKind(Enum):
    VERIFY = "verify"
    APPROVE = "approve"
    REJECT = "reject"


_SUCCESS_WORDS = {
    ActionKind.VERIFY: "verified",
    ActionKind.APPROVE: "approved",
    ActionKind.REJECT: "rejected",
}

_OUTCOME_EVENTS = {
    VoucherStatus.APPROVED: DomainEvent.WORKFLOW_APPROVED,
    VoucherStatus.REJECTED: DomainEvent.WORKFLOW_REJECTED,
    VoucherStatus.COMPLETED: DomainEvent.WORKFLOW_COMPLETED,
}


@dataclass
class ApprovalRequest:
    """Submission of a voucher into the approval workflow"""
    voucher_id: str
    voucher_type: str
    requested_by: str
    requested_by_role: str
    reason: str = ""
    transaction_type: Optional[str] = None
    amount: Optional[Union[Decimal, int, str]] = None
    currency: str = "ETB"
    customer_segment: str = "normal"
    voucher_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalAction:
    """A verify/approve/reject decision; immutable once on the approval chain"""
    voucher_id: str
    action: str
    approved_by: str
    approver_role: str
    reason: Optional[str] = None
    signature_binding: Optional[str] = None  # binding hash of the approver's signature
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'voucher_id': self.voucher_id,
            'action': self.action,
            'approved_by': self.approved_by,
            'approver_role': self.approver_role,
            'reason': self.reason,
            'signature_binding': self.signature_binding,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalAction':
        data = dict(data)
        if isinstance(data.get('timestamp'), str):
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)


@dataclass
class ApprovalWorkflow(StorageRecord):
    """Approval state of one voucher"""
    voucher_id: str
    voucher_type: str
    status: VoucherStatus
    requires_approval: bool
    approval_reason: str = ""
    current_approver: Optional[List[Role]] = None
    approval_chain: List[ApprovalAction] = field(default_factory=list)
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "ETB"
    customer_segment: str = "normal"
    requested_by: str = ""
    requested_by_role: str = ""
    voucher_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'voucher_id': self.voucher_id,
            'voucher_type': self.voucher_type,
            'status': self.status.value,
            'requires_approval': self.requires_approval,
            'approval_reason': self.approval_reason,
            'current_approver': [r.value for r in self.current_approver] if self.current_approver is not None else None,
            'approval_chain': [a.to_dict() for a in self.approval_chain],
            'transaction_type': self.transaction_type,
            'amount': str(self.amount) if self.amount is not None else None,
            'currency': self.currency,
            'customer_segment': self.customer_segment,
            'requested_by': self.requested_by,
            'requested_by_role': self.requested_by_role,
            'voucher_data': self.voucher_data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalWorkflow':
        data = dict(data)
        data['status'] = VoucherStatus(data['status'])
        if data.get('current_approver') is not None:
            data['current_approver'] = [Role(r) for r in data['current_approver']]
        data['approval_chain'] = [ApprovalAction.from_dict(a) for a in data.get('approval_chain', [])]
        if data.get('amount') is not None:
            data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)

    @property
    def resolved_at(self) -> Optional[datetime]:
        return self.updated_at if self.status in TERMINAL_STATUSES else None


@dataclass
class ApprovalStatistics:
    total: int
    pending: int
    approved: int
    rejected: int
    completed: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_approver: Dict[str, int]
    avg_approval_time: float  # seconds

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class _VoucherLock:
    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class ApprovalWorkflowEngine:
    """Creates workflows and applies approval actions to them"""

    def __init__(self, storage: StorageInterface, policy: PolicyModel,
                 audit: AuthorizationAuditTrail, sync_queue: Optional[OutboundSyncQueue] = None,
                 dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.policy = policy
        self.audit = audit
        self.sync_queue = sync_queue
        self.dispatcher = dispatcher
        self.table_name = WORKFLOW_TABLE
        self._locks: Dict[str, _VoucherLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _voucher_lock(self, voucher_id: str):
        """Serialize work on one voucher; the lock is discarded once nobody holds or waits for it"""
        with self._locks_guard:
            entry = self._locks.get(voucher_id)
            if entry is None:
                entry = self._locks[voucher_id] = _VoucherLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[voucher_id]

    def _storage_failure(self, error: Exception, operation: str, voucher_id: str) -> Result:
        logger.error(f"Store write failed during {operation} for voucher {voucher_id}: {error}")
        try:
            self.audit.reload()
        except Exception:
            logger.exception("Could not reload the audit trail after a failed write")
        return Result.fail(ErrorCode.STORAGE_ERROR, f"Could not persist {operation} for voucher {voucher_id}",
                           voucher_id=voucher_id, operation=operation)

    def _load_by_voucher(self, voucher_id: str) -> Optional[ApprovalWorkflow]:
        records = self.storage.find(self.table_name, {'voucher_id': voucher_id})
        if not records:
            return None
        return ApprovalWorkflow.from_dict(records[0])

    def _load_all(self) -> List[ApprovalWorkflow]:
        return [ApprovalWorkflow.from_dict(r) for r in self.storage.load_all(self.table_name)]

    def _publish(self, event_type: DomainEvent, workflow: ApprovalWorkflow, **extra: Any) -> None:
        if self.dispatcher is not None:
            self.dispatcher.publish(create_workflow_event(event_type, workflow, **extra))

    # Creation

    @staticmethod
    def _validate_request(request: ApprovalRequest) -> Optional[Result]:
        if not request.voucher_id:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Voucher ID is required")
        if not request.voucher_type:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Voucher type is required")
        if request.voucher_type not in {t.value for t in VoucherType}:
            return Result.fail(ErrorCode.VALIDATION_ERROR, f"Unknown voucher type: {request.voucher_type}",
                               voucher_id=request.voucher_id)
        if not request.requested_by or not request.requested_by_role:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Requester ID and role are required",
                               voucher_id=request.voucher_id)
        if request.transaction_type is not None and \
                request.transaction_type not in {t.value for t in TransactionType}:
            return Result.fail(ErrorCode.VALIDATION_ERROR,
                               f"Unknown transaction type: {request.transaction_type}",
                               voucher_id=request.voucher_id)
        if request.customer_segment not in {s.value for s in CustomerSegment}:
            return Result.fail(ErrorCode.VALIDATION_ERROR,
                               f"Unknown customer segment: {request.customer_segment}",
                               voucher_id=request.voucher_id)
        if request.amount is not None:
            try:
                amount = Decimal(str(request.amount))
            except InvalidOperation:
                return Result.fail(ErrorCode.VALIDATION_ERROR, f"Invalid amount: {request.amount}",
                                   voucher_id=request.voucher_id)
            if not amount.is_finite() or amount < 0:
                return Result.fail(ErrorCode.VALIDATION_ERROR, "Amount must be a non-negative number",
                                   voucher_id=request.voucher_id)
        return None

    def create_workflow(self, request: ApprovalRequest) -> Result[ApprovalWorkflow]:
        """
        Open the approval workflow for a voucher.

        Thresholds are evaluated only when both the transaction type and the
        amount are given. A voucher over threshold starts in
        pending_verification with Manager/Admin as current approvers;
        otherwise it starts verified.
        """
        failure = self._validate_request(request)
        if failure is not None:
            return failure

        amount = Decimal(str(request.amount)) if request.amount is not None else None
        currency = (request.currency or self.policy.base_currency).upper()

        with self._voucher_lock(request.voucher_id):
            if self._load_by_voucher(request.voucher_id) is not None:
                return Result.fail(
                    ErrorCode.VALIDATION_ERROR,
                    f"Workflow already exists for voucher {request.voucher_id}",
                    voucher_id=request.voucher_id,
                )

            if request.transaction_type and amount is not None:
                requirement = self.policy.requires_transaction_approval(
                    request.transaction_type, amount, currency, request.customer_segment
                )
            else:
                requirement = None

            required = bool(requirement and requirement.required)
            now = datetime.now(timezone.utc)
            workflow = ApprovalWorkflow(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                voucher_id=request.voucher_id,
                voucher_type=request.voucher_type,
                status=VoucherStatus.PENDING_VERIFICATION if required else VoucherStatus.VERIFIED,
                requires_approval=required,
                approval_reason=requirement.reason if requirement else "",
                current_approver=list(requirement.approver_roles) if required else None,
                transaction_type=request.transaction_type,
                amount=amount,
                currency=currency,
                customer_segment=request.customer_segment,
                requested_by=request.requested_by,
                requested_by_role=request.requested_by_role,
                voucher_data=dict(request.voucher_data),
            )

            try:
                with self.storage.atomic():
                    self.storage.save(self.table_name, workflow.id, workflow.to_dict())
                    self.audit.log_authorization(
                        user_id=request.requested_by,
                        user_role=request.requested_by_role,
                        action="create_workflow",
                        resource=f"voucher:{request.voucher_id}",
                        granted=True,
                        context={
                            'requires_approval': workflow.requires_approval,
                            'approval_reason': workflow.approval_reason,
                        },
                    )
            except Exception as e:
                return self._storage_failure(e, "create_workflow", request.voucher_id)

        log_action(logger, "info", f"Created approval workflow for voucher {workflow.voucher_id}",
                   user_id=request.requested_by, action="create_workflow",
                   resource=f"voucher:{workflow.voucher_id}",
                   extra={'status': workflow.status.value, 'requires_approval': workflow.requires_approval})

        self._publish(DomainEvent.WORKFLOW_CREATED, workflow)
        if self.sync_queue is not None:
            self.sync_queue.enqueue_workflow_created(workflow.to_dict())

        return Result.ok(workflow, "Workflow created")

    # Actions

    def _target_status(self, workflow: ApprovalWorkflow, kind: ActionKind) -> VoucherStatus:
        if kind == ActionKind.VERIFY:
            return VoucherStatus.PENDING_APPROVAL if workflow.requires_approval else VoucherStatus.COMPLETED
        if kind == ActionKind.APPROVE:
            return VoucherStatus.APPROVED
        return VoucherStatus.REJECTED

    def _next_approvers(self, status: VoucherStatus,
                        current: Optional[List[Role]]) -> Optional[List[Role]]:
        if status == VoucherStatus.PENDING_APPROVAL:
            return list(self.policy.approver_roles)
        if status in TERMINAL_STATUSES:
            return None
        return current

    def process_approval(self, action: ApprovalAction) -> Result[ApprovalWorkflow]:
        """
        Apply a verify/approve/reject action to a voucher's workflow.

        Fails with NOT_FOUND when the voucher has no workflow, UNAUTHORIZED
        when the actor's role is not among the current approvers, and
        INVALID_STATE_TRANSITION when the resulting move is not allowed. The
        read, checks and append happen under the voucher's lock.
        """
        if not action.voucher_id:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Voucher ID is required")
        if not action.approved_by:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Approver ID is required",
                               voucher_id=action.voucher_id)
        try:
            kind = ActionKind(action.action)
        except ValueError:
            return Result.fail(ErrorCode.VALIDATION_ERROR, "Invalid approval action",
                               voucher_id=action.voucher_id, action=action.action)
        try:
            role = Role(action.approver_role)
        except ValueError:
            return Result.fail(ErrorCode.VALIDATION_ERROR, f"Unknown approver role: {action.approver_role}",
                               voucher_id=action.voucher_id)

        with self._voucher_lock(action.voucher_id):
            workflow = self._load_by_voucher(action.voucher_id)
            if workflow is None:
                return Result.fail(ErrorCode.NOT_FOUND, "Workflow not found for this voucher",
                                   voucher_id=action.voucher_id)

            if workflow.current_approver is not None and role not in workflow.current_approver:
                try:
                    self.audit.log_authorization(
                        user_id=action.approved_by,
                        user_role=role.value,
                        action=f"approval_{kind.value}",
                        resource=f"voucher:{action.voucher_id}",
                        granted=False,
                        denial_reason=f"Role {role.value} not authorized to {kind.value} this voucher",
                    )
                except Exception as e:
                    return self._storage_failure(e, f"approval_{kind.value}", action.voucher_id)
                return Result.fail(
                    ErrorCode.UNAUTHORIZED,
                    f"You are not authorized to {kind.value} this transaction",
                    voucher_id=action.voucher_id,
                    role=role.value,
                )

            new_status = self._target_status(workflow, kind)
            if not is_valid_transition(workflow.status, new_status):
                return Result.fail(
                    ErrorCode.INVALID_STATE_TRANSITION,
                    f"Cannot transition from {workflow.status.value} to {new_status.value}",
                    voucher_id=action.voucher_id,
                    from_status=workflow.status.value,
                    to_status=new_status.value,
                )

            now = datetime.now(timezone.utc)
            recorded = replace(action, action=kind.value, approver_role=role.value, timestamp=now)
            updated = replace(
                workflow,
                status=new_status,
                approval_chain=workflow.approval_chain + [recorded],
                updated_at=now,
                current_approver=self._next_approvers(new_status, workflow.current_approver),
            )

            try:
                with self.storage.atomic():
                    self.storage.save(self.table_name, updated.id, updated.to_dict())
                    self.audit.log_approval(
                        approver_id=action.approved_by,
                        approver_role=role.value,
                        voucher_id=action.voucher_id,
                        voucher_type=updated.voucher_type,
                        action=kind.value,
                        amount=updated.amount,
                        currency=updated.currency,
                        reason=action.reason,
                        digital_signature=action.signature_binding,
                    )
            except Exception as e:
                return self._storage_failure(e, f"approval_{kind.value}", action.voucher_id)

        log_action(logger, "info", f"Voucher {updated.voucher_id} {_SUCCESS_WORDS[kind]}",
                   user_id=action.approved_by, action=f"approval_{kind.value}",
                   resource=f"voucher:{updated.voucher_id}",
                   extra={'from_status': workflow.status.value, 'to_status': new_status.value})

        self._publish(DomainEvent.WORKFLOW_ACTION_RECORDED, updated,
                      action=kind.value, approved_by=action.approved_by)
        if new_status in _OUTCOME_EVENTS:
            self._publish(_OUTCOME_EVENTS[new_status], updated)
        if self.sync_queue is not None:
            self.sync_queue.enqueue_approval_action(recorded.to_dict(), updated.to_dict())

        return Result.ok(updated, f"Voucher {_SUCCESS_WORDS[kind]} successfully")

    # Queries

    def get_workflow_by_voucher(self, voucher_id: str) -> Optional[ApprovalWorkflow]:
        return self._load_by_voucher(voucher_id)

    def get_workflows_by_status(self, status: Union[VoucherStatus, str]) -> List[ApprovalWorkflow]:
        """Workflows in the given status, newest first; an unknown status matches nothing"""
        try:
            status = status if isinstance(status, VoucherStatus) else VoucherStatus(status)
        except ValueError:
            return []
        workflows = [w for w in self._load_all() if w.status == status]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    def get_pending_approvals_for_role(self, role: Union[Role, str]) -> List[ApprovalWorkflow]:
        """Workflows awaiting action that the role may act on, newest first"""
        try:
            role = role if isinstance(role, Role) else Role(role)
        except ValueError:
            return []
        workflows = [
            w for w in self._load_all()
            if w.status in AWAITING_ACTION_STATUSES
            and w.current_approver is not None
            and role in w.current_approver
        ]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    def get_approval_history(self, voucher_id: str) -> List[ApprovalAction]:
        workflow = self._load_by_voucher(voucher_id)
        return list(workflow.approval_chain) if workflow else []

    def get_approval_statistics(self, start_date: Optional[datetime] = None,
                                end_date: Optional[datetime] = None,
                                voucher_type: Optional[str] = None,
                                approver_role: Optional[str] = None) -> ApprovalStatistics:
        """
        Aggregate workflow outcomes.

        Filters apply to workflow creation time, voucher type, and whether any
        action on the chain was taken by ``approver_role``. The average
        approval time covers terminal workflows only.
        """
        workflows = self._load_all()
        if start_date:
            workflows = [w for w in workflows if w.created_at >= start_date]
        if end_date:
            workflows = [w for w in workflows if w.created_at <= end_date]
        if voucher_type:
            workflows = [w for w in workflows if w.voucher_type == voucher_type]
        if approver_role:
            workflows = [w for w in workflows if any(a.approver_role == approver_role for a in w.approval_chain)]

        by_status: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        by_approver: Dict[str, int] = {}
        total_seconds = 0.0
        resolved = 0

        for w in workflows:
            by_status[w.status.value] = by_status.get(w.status.value, 0) + 1
            by_type[w.voucher_type] = by_type.get(w.voucher_type, 0) + 1
            for a in w.approval_chain:
                key = f"{a.approver_role}:{a.action}"
                by_approver[key] = by_approver.get(key, 0) + 1
            if w.resolved_at is not None:
                total_seconds += (w.resolved_at - w.created_at).total_seconds()
                resolved += 1

        return ApprovalStatistics(
            total=len(workflows),
            pending=sum(1 for w in workflows if w.status in AWAITING_ACTION_STATUSES),
            approved=by_status.get(VoucherStatus.APPROVED.value, 0),
            rejected=by_status.get(VoucherStatus.REJECTED.value, 0),
            completed=by_status.get(VoucherStatus.COMPLETED.value, 0),
            by_status=by_status,
            by_type=by_type,
            by_approver=by_approver,
            avg_approval_time=total_seconds / resolved if resolved else 0.0,
        )
