"""
Backend Sync Module

Notifies the branch backend about workflow creations and approval actions.
Local workflow commits are final; notifications are written to an outbox
table, delivered on a worker thread with bounded retry, and anything that
still fails is moved to a dead-letter table for later reconciliation.
Commands still in the outbox when the process stops are queued again on the
next start, so delivery is at least once.
"""

import httpx
import queue
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import BackendSyncError
from .logging_config import get_logger
from .storage import StorageInterface

logger = get_logger("approval_engine.sync")

DEAD_LETTER_TABLE = "sync_dead_letters"
OUTBOX_TABLE = "sync_outbox"


class SyncCommandType(Enum):
    WORKFLOW_CREATED = "workflow_created"
    APPROVAL_ACTION = "approval_action"


@dataclass
class SyncCommand:
    """One pending backend notification"""
    command_type: SyncCommandType
    voucher_id: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'command_type': self.command_type.value,
            'voucher_id': self.voucher_id,
            'payload': self.payload,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncCommand':
        return cls(
            id=data['id'],
            command_type=SyncCommandType(data['command_type']),
            voucher_id=data['voucher_id'],
            payload=data['payload'],
            attempts=data.get('attempts', 0),
            last_error=data.get('last_error'),
            created_at=datetime.fromisoformat(data['created_at']),
        )


class BackendSyncClient(ABC):
    """Transport used by the outbound queue"""

    @abstractmethod
    def send_workflow_created(self, workflow: Dict[str, Any]) -> None:
        """Raise BackendSyncError if the backend did not accept the call"""
        pass

    @abstractmethod
    def send_approval_action(self, action: Dict[str, Any], workflow: Dict[str, Any]) -> None:
        """Raise BackendSyncError if the backend did not accept the call"""
        pass

    def close(self) -> None:
        pass


class HttpBackendSyncClient(BackendSyncClient):
    """REST client for the branch backend approval endpoints"""

    def __init__(self, base_url: str, timeout: float = 5.0, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout)

    def _post(self, path: str, body: Dict[str, Any]) -> None:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self._client.post(f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as e:
            raise BackendSyncError(f"Backend unreachable: {e}") from e

        if not 200 <= response.status_code < 300:
            raise BackendSyncError(
                f"Backend returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

    def send_workflow_created(self, workflow: Dict[str, Any]) -> None:
        self._post("/approval/workflow", workflow)

    def send_approval_action(self, action: Dict[str, Any], workflow: Dict[str, Any]) -> None:
        self._post("/approval/action", {"action": action, "workflow": workflow})

    def health_check(self) -> bool:
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self) -> None:
        self._client.close()


class RecordingBackendSyncClient(BackendSyncClient):
    """In-process client for development and tests; can simulate outages"""

    def __init__(self, fail_times: int = 0):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def _record(self, kind: str, body: Dict[str, Any]) -> None:
        with self._lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise BackendSyncError("Simulated backend outage", status_code=503)
            self.calls.append((kind, body))

    def send_workflow_created(self, workflow: Dict[str, Any]) -> None:
        self._record("workflow", workflow)

    def send_approval_action(self, action: Dict[str, Any], workflow: Dict[str, Any]) -> None:
        self._record("action", {"action": action, "workflow": workflow})


class OutboundSyncQueue:
    """
    FIFO queue of backend notifications.

    Drained either by a daemon worker (start/stop) or synchronously with
    process_pending(). Each command gets up to max_attempts tries with
    exponential backoff capped at backoff_max seconds. A command leaves the
    outbox table when it is delivered or dead-lettered.
    """

    def __init__(self, client: BackendSyncClient, storage: StorageInterface,
                 max_attempts: int = 3, backoff_base: float = 0.5, backoff_max: float = 30.0,
                 dead_letter_table: str = DEAD_LETTER_TABLE, outbox_table: str = OUTBOX_TABLE):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.storage = storage
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.dead_letter_table = dead_letter_table
        self.outbox_table = outbox_table

        self._queue: "queue.Queue[SyncCommand]" = queue.Queue()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self._stats = {"enqueued": 0, "delivered": 0, "failed_attempts": 0, "dead_lettered": 0}
        self._recover_outbox()

    # Enqueue

    def enqueue_workflow_created(self, workflow: Dict[str, Any]) -> SyncCommand:
        return self._enqueue(SyncCommand(
            command_type=SyncCommandType.WORKFLOW_CREATED,
            voucher_id=workflow.get('voucher_id', ''),
            payload={'workflow': workflow},
        ))

    def enqueue_approval_action(self, action: Dict[str, Any], workflow: Dict[str, Any]) -> SyncCommand:
        return self._enqueue(SyncCommand(
            command_type=SyncCommandType.APPROVAL_ACTION,
            voucher_id=workflow.get('voucher_id', ''),
            payload={'action': action, 'workflow': workflow},
        ))

    def _enqueue(self, command: SyncCommand) -> SyncCommand:
        try:
            self.storage.save(self.outbox_table, command.id, command.to_dict())
        except Exception as e:
            # delivery continues from memory
            logger.error(f"Could not write notification for voucher {command.voucher_id} to the outbox: {e}")
        self._queue.put(command)
        self._bump("enqueued")
        logger.debug(f"Queued {command.command_type.value} for voucher {command.voucher_id}")
        return command

    def _recover_outbox(self) -> None:
        commands = [SyncCommand.from_dict(d) for d in self.storage.load_all(self.outbox_table)]
        for command in commands:
            self._queue.put(command)
        if commands:
            logger.info(f"Requeued {len(commands)} undelivered backend notifications from the outbox")

    # Worker lifecycle

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._run, name="approval-backend-sync", daemon=True)
        self._worker.start()
        logger.info("Backend sync worker started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
            logger.info("Backend sync worker stopped")

    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                command = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._deliver(command)
            finally:
                self._queue.task_done()

    def process_pending(self) -> int:
        """Deliver everything currently queued on the calling thread; returns commands handled"""
        handled = 0
        while True:
            try:
                command = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                self._deliver(command)
            finally:
                self._queue.task_done()
            handled += 1

    # Delivery

    def _send(self, command: SyncCommand) -> None:
        if command.command_type == SyncCommandType.WORKFLOW_CREATED:
            self.client.send_workflow_created(command.payload['workflow'])
        else:
            self.client.send_approval_action(command.payload['action'], command.payload['workflow'])

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def _deliver(self, command: SyncCommand) -> bool:
        while command.attempts < self.max_attempts:
            command.attempts += 1
            try:
                self._send(command)
            except Exception as e:
                command.last_error = str(e)
                self._bump("failed_attempts")
                logger.warning(
                    f"Backend sync attempt {command.attempts}/{self.max_attempts} failed "
                    f"for voucher {command.voucher_id}: {e}"
                )
                if command.attempts < self.max_attempts:
                    delay = self._backoff(command.attempts)
                    if delay > 0 and self._stop_event.wait(delay):
                        break
                continue

            self.storage.delete(self.outbox_table, command.id)
            self._bump("delivered")
            logger.debug(f"Delivered {command.command_type.value} for voucher {command.voucher_id}")
            return True

        self._dead_letter(command)
        return False

    def _dead_letter(self, command: SyncCommand) -> None:
        with self.storage.atomic():
            self.storage.save(self.dead_letter_table, command.id, command.to_dict())
            self.storage.delete(self.outbox_table, command.id)
        self._bump("dead_lettered")
        logger.error(
            f"Backend sync for voucher {command.voucher_id} dead-lettered after "
            f"{command.attempts} attempts: {command.last_error}"
        )

    # Reconciliation

    def dead_letters(self) -> List[SyncCommand]:
        return [SyncCommand.from_dict(d) for d in self.storage.load_all(self.dead_letter_table)]

    def retry_dead_letters(self) -> Dict[str, int]:
        """One more delivery attempt per dead letter; delivered ones are removed"""
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        for command in self.dead_letters():
            results["attempted"] += 1
            command.attempts += 1
            try:
                self._send(command)
            except Exception as e:
                command.last_error = str(e)
                results["failed"] += 1
                self.storage.save(self.dead_letter_table, command.id, command.to_dict())
                logger.warning(f"Dead-letter retry failed for voucher {command.voucher_id}: {e}")
                continue

            self.storage.delete(self.dead_letter_table, command.id)
            self._bump("delivered")
            results["succeeded"] += 1

        return results

    # Stats

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            result = dict(self._stats)
        result["pending"] = self._queue.qsize()
        result["outbox_count"] = self.storage.count(self.outbox_table)
        result["dead_letter_count"] = self.storage.count(self.dead_letter_table)
        return result
