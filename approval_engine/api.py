"""
HTTP API Module

FastAPI application exposing workflow creation and actions, workflow
queries, signature binding and verification, and audit analytics/export.
Engine results that carry an error are translated to HTTP status codes.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .audit import AuditCategory
from .context import EngineContext, create_context
from .config import get_config
from .errors import EngineError, ErrorCode, Result
from .logging_config import setup_logging
from .signatures import BoundSignature, SignatureData, SignatureType
from .state_machine import VoucherStatus
from .workflow import ApprovalAction, ApprovalRequest


ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.CRYPTO_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.STORAGE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# Request models

class CreateWorkflowRequest(BaseModel):
    voucher_id: str = Field(..., description="Voucher identifier")
    voucher_type: str = Field(..., description="withdrawal, deposit, transfer, rtgs, account_opening, stop_payment, other")
    requested_by: str
    requested_by_role: str
    reason: str = ""
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "ETB"
    customer_segment: str = "normal"
    voucher_data: Dict[str, Any] = Field(default_factory=dict)


class ApprovalActionRequest(BaseModel):
    action: str = Field(..., description="verify, approve or reject")
    approved_by: str
    approver_role: str
    reason: Optional[str] = None
    signature_binding: Optional[str] = None


class SignatureModel(BaseModel):
    signature_payload: str
    actor_id: str
    actor_role: str
    timestamp: Optional[datetime] = None

    def to_signature(self) -> SignatureData:
        return SignatureData(
            signature_payload=self.signature_payload,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            timestamp=self.timestamp or datetime.now(timezone.utc),
        )


class BindSignatureRequest(BaseModel):
    voucher: Dict[str, Any]
    signature: SignatureModel
    signature_type: str


class VerifyBindingRequest(BaseModel):
    bound_signature: Dict[str, Any]
    voucher: Dict[str, Any]


class ApprovalCheckRequest(BaseModel):
    transaction_type: str
    amount: Decimal
    currency: str = "ETB"
    customer_segment: str = "normal"


# Helpers

def get_context(request: Request) -> EngineContext:
    return request.app.state.context


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _error_detail(error: EngineError) -> Dict[str, Any]:
    return _jsonable(error.to_dict())


def _unwrap(result: Result) -> Any:
    if not result.success:
        raise HTTPException(status_code=ERROR_STATUS[result.code], detail=_error_detail(result.error))
    return result.value


def create_app(context: Optional[EngineContext] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Voucher Approval Engine API",
        description="Role-based voucher approval with cryptographic signature binding",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.context = context or create_context()

    @app.get("/health")
    async def health_check(ctx: EngineContext = Depends(get_context)):
        return {
            "status": "healthy",
            "version": __version__,
            "sync_worker_running": ctx.sync_queue.is_running(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # Workflows

    @app.post("/workflows", status_code=status.HTTP_201_CREATED)
    def create_workflow(request: CreateWorkflowRequest, ctx: EngineContext = Depends(get_context)):
        workflow = _unwrap(ctx.workflows.create_workflow(ApprovalRequest(**request.model_dump())))
        return workflow.to_dict()

    @app.post("/workflows/{voucher_id}/actions")
    def process_action(voucher_id: str, request: ApprovalActionRequest,
                       ctx: EngineContext = Depends(get_context)):
        result = ctx.workflows.process_approval(ApprovalAction(voucher_id=voucher_id, **request.model_dump()))
        workflow = _unwrap(result)
        return {"message": result.message, "workflow": workflow.to_dict()}

    @app.get("/workflows")
    def list_workflows(status_filter: str = Query(..., alias="status"),
                       ctx: EngineContext = Depends(get_context)):
        try:
            voucher_status = VoucherStatus(status_filter)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status_filter}")
        return [w.to_dict() for w in ctx.workflows.get_workflows_by_status(voucher_status)]

    @app.get("/workflows/pending/{role}")
    def pending_for_role(role: str, ctx: EngineContext = Depends(get_context)):
        return [w.to_dict() for w in ctx.workflows.get_pending_approvals_for_role(role)]

    @app.get("/workflows/{voucher_id}")
    def get_workflow(voucher_id: str, ctx: EngineContext = Depends(get_context)):
        workflow = ctx.workflows.get_workflow_by_voucher(voucher_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found for this voucher")
        return workflow.to_dict()

    @app.get("/workflows/{voucher_id}/history")
    def get_history(voucher_id: str, ctx: EngineContext = Depends(get_context)):
        return [a.to_dict() for a in ctx.workflows.get_approval_history(voucher_id)]

    @app.get("/statistics")
    def get_statistics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                       voucher_type: Optional[str] = None, approver_role: Optional[str] = None,
                       ctx: EngineContext = Depends(get_context)):
        return ctx.workflows.get_approval_statistics(
            start_date=start_date, end_date=end_date,
            voucher_type=voucher_type, approver_role=approver_role,
        ).to_dict()

    # Policy

    @app.post("/policy/approval-check")
    def check_approval(request: ApprovalCheckRequest, ctx: EngineContext = Depends(get_context)):
        try:
            requirement = ctx.policy.requires_transaction_approval(
                request.transaction_type, request.amount, request.currency, request.customer_segment
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {
            "required": requirement.required,
            "reason": requirement.reason,
            "approver_roles": [r.value for r in requirement.approver_roles],
        }

    @app.get("/policy/roles/{role}/permissions")
    def role_permissions(role: str, ctx: EngineContext = Depends(get_context)):
        return sorted(p.value for p in ctx.policy.get_role_permissions(role))

    # Signatures

    @app.post("/signatures/bind", status_code=status.HTTP_201_CREATED)
    def bind_signature(request: BindSignatureRequest, ctx: EngineContext = Depends(get_context)):
        bound = _unwrap(ctx.signatures.bind_signature_to_voucher(
            request.signature.to_signature(), request.voucher, request.signature_type
        ))
        return bound.to_dict()

    @app.post("/signatures/verify")
    def verify_signature(request: VerifyBindingRequest, ctx: EngineContext = Depends(get_context)):
        try:
            bound = BoundSignature.from_dict(request.bound_signature)
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Malformed bound signature: {e}")

        verification = ctx.signatures.verify_binding(bound, request.voucher)
        if verification.error is not None:
            raise HTTPException(status_code=ERROR_STATUS[verification.error.code],
                                detail=_error_detail(verification.error))
        return {"valid": verification.valid, "reason": verification.reason}

    @app.get("/signatures/{voucher_id}")
    def list_signatures(voucher_id: str, ctx: EngineContext = Depends(get_context)):
        registry = ctx.signatures.registry
        return [b.to_dict() for b in registry.get_for_voucher(voucher_id)] if registry else []

    # Audit

    @app.get("/audit/analytics")
    def audit_analytics(ctx: EngineContext = Depends(get_context)):
        return ctx.audit.get_analytics().to_dict()

    @app.get("/audit/export")
    def audit_export(format: str = "json", category: Optional[str] = None,
                     ctx: EngineContext = Depends(get_context)):
        if format not in ("json", "csv"):
            raise HTTPException(status_code=400, detail=f"Unsupported export format: {format}")
        try:
            selected = AuditCategory(category) if category else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown audit category: {category}")
        media_type = "text/csv" if format == "csv" else "application/json"
        return PlainTextResponse(content=ctx.audit.export_logs(format, selected), media_type=media_type)

    @app.get("/audit/integrity")
    def audit_integrity(ctx: EngineContext = Depends(get_context)):
        return ctx.audit.verify_integrity()

    # Backend sync

    @app.get("/sync/stats")
    def sync_stats(ctx: EngineContext = Depends(get_context)):
        return ctx.sync_queue.stats()

    @app.post("/sync/dead-letters/retry")
    def retry_dead_letters(ctx: EngineContext = Depends(get_context)):
        return ctx.sync_queue.retry_dead_letters()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API server with settings from the environment"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    context = create_context(config)
    try:
        uvicorn.run(
            create_app(context),
            host=host or config.api_host,
            port=port or config.api_port,
            log_level=config.log_level.lower(),
        )
    finally:
        context.close()
