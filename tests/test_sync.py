"""
Tests for backend sync: HTTP client, outbound queue, retry and dead letters
"""

import time
import pytest
from unittest.mock import Mock, patch
import httpx

from approval_engine.errors import BackendSyncError
from approval_engine.storage import InMemoryStorage
from approval_engine.sync import (
    HttpBackendSyncClient, RecordingBackendSyncClient, OutboundSyncQueue,
    SyncCommand, SyncCommandType,
)


WORKFLOW = {"voucher_id": "WD-001", "status": "pending_verification"}
ACTION = {"voucher_id": "WD-001", "action": "verify", "approved_by": "mgr-1"}


class TestHttpBackendSyncClient:
    """Test the REST transport"""

    def setup_method(self):
        self.client = HttpBackendSyncClient("http://backend.local/api/", timeout=2.0, api_key="test-key")

    def teardown_method(self):
        self.client.close()

    @patch('httpx.Client.post')
    def test_workflow_created_posted(self, mock_post):
        """Test workflow creation notification request"""
        mock_response = Mock()
        mock_response.status_code = 201
        mock_post.return_value = mock_response

        self.client.send_workflow_created(WORKFLOW)

        mock_post.assert_called_once()
        call_args = mock_post.call_args
        assert call_args[0][0] == "http://backend.local/api/approval/workflow"
        assert call_args.kwargs["json"] == WORKFLOW
        assert call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"

    @patch('httpx.Client.post')
    def test_action_posted(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_post.return_value = mock_response

        self.client.send_approval_action(ACTION, WORKFLOW)

        call_args = mock_post.call_args
        assert call_args[0][0] == "http://backend.local/api/approval/action"
        assert call_args.kwargs["json"] == {"action": ACTION, "workflow": WORKFLOW}

    @patch('httpx.Client.post')
    def test_error_status_raises(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 500
        mock_response.text = "Internal Server Error"
        mock_post.return_value = mock_response

        with pytest.raises(BackendSyncError) as exc_info:
            self.client.send_workflow_created(WORKFLOW)
        assert exc_info.value.status_code == 500

    @patch('httpx.Client.post')
    def test_connection_error_raises(self, mock_post):
        mock_post.side_effect = httpx.ConnectError("Connection failed")

        with pytest.raises(BackendSyncError) as exc_info:
            self.client.send_workflow_created(WORKFLOW)
        assert exc_info.value.status_code is None

    @patch('httpx.Client.post')
    def test_no_auth_header_without_key(self, mock_post):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_post.return_value = mock_response
        client = HttpBackendSyncClient("http://backend.local")

        client.send_workflow_created(WORKFLOW)

        assert "Authorization" not in mock_post.call_args.kwargs["headers"]
        client.close()

    @patch('httpx.Client.get')
    def test_health_check(self, mock_get):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_get.return_value = mock_response

        assert self.client.health_check() is True
        mock_get.assert_called_once_with("http://backend.local/api/health")

    @patch('httpx.Client.get')
    def test_health_check_failure(self, mock_get):
        mock_get.side_effect = httpx.ConnectError("Connection failed")

        assert self.client.health_check() is False


class TestSyncCommand:
    """Test command serialization"""

    def test_round_trip(self):
        command = SyncCommand(
            command_type=SyncCommandType.APPROVAL_ACTION,
            voucher_id="WD-001",
            payload={"action": ACTION, "workflow": WORKFLOW},
            attempts=2,
            last_error="Backend returned 503",
        )

        restored = SyncCommand.from_dict(command.to_dict())
        assert restored == command


class TestOutboundSyncQueue:
    """Test delivery, retry and dead-lettering"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def make_queue(self, client, **kwargs):
        kwargs.setdefault("backoff_base", 0)
        return OutboundSyncQueue(client, self.storage, **kwargs)

    def test_delivers_in_order(self):
        backend = RecordingBackendSyncClient()
        sync_queue = self.make_queue(backend)

        sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.enqueue_approval_action(ACTION, WORKFLOW)

        assert sync_queue.process_pending() == 2
        assert backend.calls == [
            ("workflow", WORKFLOW),
            ("action", {"action": ACTION, "workflow": WORKFLOW}),
        ]
        assert sync_queue.process_pending() == 0

    def test_retry_then_success(self):
        backend = RecordingBackendSyncClient(fail_times=2)
        sync_queue = self.make_queue(backend, max_attempts=3)

        sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.process_pending()

        assert len(backend.calls) == 1
        stats = sync_queue.stats()
        assert stats["delivered"] == 1
        assert stats["failed_attempts"] == 2
        assert stats["dead_lettered"] == 0

    def test_dead_letter_after_max_attempts(self):
        backend = RecordingBackendSyncClient(fail_times=5)
        sync_queue = self.make_queue(backend, max_attempts=3)

        command = sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.process_pending()

        dead = sync_queue.dead_letters()
        assert len(dead) == 1
        assert dead[0].id == command.id
        assert dead[0].attempts == 3
        assert dead[0].last_error == "Simulated backend outage"
        assert sync_queue.stats()["dead_letter_count"] == 1

    def test_retry_dead_letters(self):
        backend = RecordingBackendSyncClient(fail_times=4)
        sync_queue = self.make_queue(backend, max_attempts=2)

        sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.enqueue_approval_action(ACTION, WORKFLOW)
        sync_queue.process_pending()
        assert len(sync_queue.dead_letters()) == 2

        assert sync_queue.retry_dead_letters() == {"attempted": 2, "succeeded": 2, "failed": 0}
        assert sync_queue.dead_letters() == []
        assert len(backend.calls) == 2

    def test_failed_dead_letter_retry_kept(self):
        backend = RecordingBackendSyncClient(fail_times=3)
        sync_queue = self.make_queue(backend, max_attempts=2)

        sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.process_pending()

        assert sync_queue.retry_dead_letters() == {"attempted": 1, "succeeded": 0, "failed": 1}
        dead = sync_queue.dead_letters()
        assert len(dead) == 1
        assert dead[0].attempts == 3

    def test_backoff_is_capped(self):
        sync_queue = OutboundSyncQueue(RecordingBackendSyncClient(), self.storage,
                                       backoff_base=1.0, backoff_max=5.0)

        assert [sync_queue._backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            OutboundSyncQueue(RecordingBackendSyncClient(), self.storage, max_attempts=0)

    def test_outbox_tracks_undelivered_commands(self):
        backend = RecordingBackendSyncClient()
        sync_queue = self.make_queue(backend)

        command = sync_queue.enqueue_workflow_created(WORKFLOW)
        assert [r["id"] for r in self.storage.load_all("sync_outbox")] == [command.id]
        assert sync_queue.stats()["outbox_count"] == 1

        sync_queue.process_pending()
        assert self.storage.load_all("sync_outbox") == []

    def test_dead_letter_leaves_outbox(self):
        sync_queue = self.make_queue(RecordingBackendSyncClient(fail_times=5), max_attempts=2)

        sync_queue.enqueue_workflow_created(WORKFLOW)
        sync_queue.process_pending()

        stats = sync_queue.stats()
        assert stats["outbox_count"] == 0
        assert stats["dead_letter_count"] == 1

    def test_undelivered_commands_requeued_after_restart(self):
        first = self.make_queue(RecordingBackendSyncClient())
        first.enqueue_workflow_created(WORKFLOW)
        first.enqueue_approval_action(ACTION, WORKFLOW)
        first.stop()

        backend = RecordingBackendSyncClient()
        restarted = self.make_queue(backend)

        assert restarted.stats()["pending"] == 2
        assert restarted.process_pending() == 2
        assert backend.calls == [
            ("workflow", WORKFLOW),
            ("action", {"action": ACTION, "workflow": WORKFLOW}),
        ]
        assert restarted.stats()["outbox_count"] == 0

    def test_stats(self):
        sync_queue = self.make_queue(RecordingBackendSyncClient())
        sync_queue.enqueue_workflow_created(WORKFLOW)

        stats = sync_queue.stats()
        assert stats["enqueued"] == 1
        assert stats["pending"] == 1
        assert stats["delivered"] == 0


class TestSyncWorker:
    """Test background delivery"""

    def test_worker_delivers(self):
        backend = RecordingBackendSyncClient()
        sync_queue = OutboundSyncQueue(backend, InMemoryStorage(), backoff_base=0)
        sync_queue.start()
        try:
            assert sync_queue.is_running()
            sync_queue.enqueue_workflow_created(WORKFLOW)

            deadline = time.time() + 5
            while not backend.calls and time.time() < deadline:
                time.sleep(0.01)
            assert backend.calls == [("workflow", WORKFLOW)]
        finally:
            sync_queue.stop()

        assert not sync_queue.is_running()

    def test_start_is_idempotent(self):
        sync_queue = OutboundSyncQueue(RecordingBackendSyncClient(), InMemoryStorage())
        sync_queue.start()
        worker = sync_queue._worker
        sync_queue.start()
        try:
            assert sync_queue._worker is worker
        finally:
            sync_queue.stop()
