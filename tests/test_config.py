"""
Tests for configuration and structured logging
"""

import io
import json
import logging
import sys

import pytest

from approval_engine.config import ApprovalEngineConfig, get_config, reload_config
from approval_engine.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestConfig:
    """Test environment-based settings"""

    def test_defaults(self, monkeypatch):
        for name in ("APPROVAL_API_PORT", "APPROVAL_AUDIT_MAX_ENTRIES", "APPROVAL_HASH_ALGORITHM"):
            monkeypatch.delenv(name, raising=False)

        config = ApprovalEngineConfig(_env_file=None)
        assert config.api_port == 8091
        assert config.base_currency == "ETB"
        assert config.audit_max_entries == 5000
        assert config.hash_algorithm == "SHA-256"
        assert config.sync_max_attempts == 3
        assert config.encryption_enabled is False

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("APPROVAL_API_PORT", "9000")
        monkeypatch.setenv("APPROVAL_AUDIT_MAX_ENTRIES", "100")
        monkeypatch.setenv("APPROVAL_SYNC_WORKER_ENABLED", "false")
        monkeypatch.setenv("APPROVAL_BACKEND_SYNC_URL", "http://backend.local")

        config = ApprovalEngineConfig(_env_file=None)
        assert config.api_port == 9000
        assert config.audit_max_entries == 100
        assert config.sync_worker_enabled is False
        assert config.backend_sync_url == "http://backend.local"

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("APPROVAL_LOG_LEVEL", "DEBUG")

        reloaded = reload_config()
        assert reloaded.log_level == "DEBUG"
        assert get_config() is reloaded

        monkeypatch.delenv("APPROVAL_LOG_LEVEL")
        reload_config()


class TestStructuredLogging:
    """Test JSON log output"""

    @pytest.fixture
    def capture(self):
        logger = setup_logging("DEBUG", "json", logger_name="approval_engine.test")
        stream = io.StringIO()
        logger.handlers[0].stream = stream
        yield logger, stream
        logger.handlers.clear()

    def test_log_action_fields(self, capture):
        logger, stream = capture

        log_action(logger, "info", "Voucher WD-001 approved", user_id="mgr-1",
                   action="approval_approve", resource="voucher:WD-001",
                   correlation_id="req-42", extra={"to_status": "approved"})

        entry = json.loads(stream.getvalue())
        assert entry["level"] == "INFO"
        assert entry["logger"] == "approval_engine.test"
        assert entry["message"] == "Voucher WD-001 approved"
        assert entry["user_id"] == "mgr-1"
        assert entry["action"] == "approval_approve"
        assert entry["resource"] == "voucher:WD-001"
        assert entry["correlation_id"] == "req-42"
        assert entry["extra"] == {"to_status": "approved"}

    def test_missing_fields_omitted(self, capture):
        logger, stream = capture

        logger.warning("plain message")

        entry = json.loads(stream.getvalue())
        assert "user_id" not in entry
        assert "extra" not in entry

    def test_exception_included(self):
        formatter = JSONFormatter()
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("approval_engine", logging.ERROR, __file__, 1,
                                       "failed", None, sys.exc_info())

        entry = json.loads(formatter.format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_text_format(self):
        logger = setup_logging("INFO", "text", logger_name="approval_engine.text")
        try:
            assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
            assert len(logger.handlers) == 1
            setup_logging("INFO", "text", logger_name="approval_engine.text")
            assert len(logger.handlers) == 1
        finally:
            logger.handlers.clear()

    def test_get_logger(self):
        assert get_logger("approval_engine.workflow").name == "approval_engine.workflow"
