"""
Engine Context

Builds the engine's components once and wires them together: storage, audit
trail, policy, signature binding, workflow engine, outbound backend queue and
event dispatcher.
"""

from dataclasses import dataclass
from typing import Optional

from .audit import AuthorizationAuditTrail
from .config import ApprovalEngineConfig, get_config
from .encryption import EncryptedStorage, create_encryption_provider
from .events import EventDispatcher
from .logging_config import get_logger
from .policy import PermissionChecker, PolicyModel
from .signatures import SignatureBindingEngine, SignatureRegistry
from .storage import StorageInterface, create_storage
from .sync import (
    BackendSyncClient, HttpBackendSyncClient, OutboundSyncQueue, RecordingBackendSyncClient,
)
from .workflow import ApprovalWorkflowEngine

logger = get_logger("approval_engine.context")


@dataclass
class EngineContext:
    """All engine components for one process"""
    config: ApprovalEngineConfig
    storage: StorageInterface
    policy: PolicyModel
    audit: AuthorizationAuditTrail
    permissions: PermissionChecker
    signatures: SignatureBindingEngine
    sync_queue: OutboundSyncQueue
    dispatcher: EventDispatcher
    workflows: ApprovalWorkflowEngine

    def close(self) -> None:
        """Stop the sync worker and release the backend client and storage"""
        self.sync_queue.stop()
        self.sync_queue.client.close()
        self.storage.close()


def _load_policy(config: ApprovalEngineConfig) -> PolicyModel:
    if config.policy_file:
        logger.info(f"Loading approval policy from {config.policy_file}")
        return PolicyModel.from_json_file(config.policy_file)
    policy = PolicyModel.default()
    if config.base_currency.upper() != policy.base_currency:
        raise ValueError(
            f"Base currency {config.base_currency} requires a policy file with matching thresholds"
        )
    return policy


def _create_backend_client(config: ApprovalEngineConfig) -> BackendSyncClient:
    if not config.backend_sync_url:
        logger.info("No backend sync URL configured; recording notifications locally")
        return RecordingBackendSyncClient()
    return HttpBackendSyncClient(
        base_url=config.backend_sync_url,
        timeout=config.backend_sync_timeout,
        api_key=config.backend_sync_api_key or None,
    )


def create_context(config: Optional[ApprovalEngineConfig] = None,
                   storage: Optional[StorageInterface] = None,
                   backend_client: Optional[BackendSyncClient] = None) -> EngineContext:
    """
    Build an engine context.

    Args:
        config: Settings; defaults to the process-wide configuration
        storage: Durable store; defaults to one built from config.database_url
        backend_client: Backend transport; defaults to HTTP when a sync URL is set
    """
    config = config or get_config()
    storage = storage or create_storage(config.database_url)
    if config.encryption_enabled:
        provider = create_encryption_provider(config.encryption_provider, config.encryption_master_key)
        storage = EncryptedStorage(storage, provider)

    policy = _load_policy(config)
    audit = AuthorizationAuditTrail(storage, max_entries=config.audit_max_entries)
    dispatcher = EventDispatcher()

    sync_queue = OutboundSyncQueue(
        client=backend_client or _create_backend_client(config),
        storage=storage,
        max_attempts=config.sync_max_attempts,
        backoff_base=config.sync_backoff_base_seconds,
        backoff_max=config.sync_backoff_max_seconds,
    )
    if config.sync_worker_enabled:
        sync_queue.start()

    context = EngineContext(
        config=config,
        storage=storage,
        policy=policy,
        audit=audit,
        permissions=PermissionChecker(policy, audit),
        signatures=SignatureBindingEngine(
            audit, algorithm=config.hash_algorithm, registry=SignatureRegistry(storage),
            dispatcher=dispatcher,
        ),
        sync_queue=sync_queue,
        dispatcher=dispatcher,
        workflows=ApprovalWorkflowEngine(storage, policy, audit, sync_queue=sync_queue, dispatcher=dispatcher),
    )
    logger.info("Approval engine context created")
    return context
