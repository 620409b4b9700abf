"""
Tests for configuration, structured logging and the error taxonomy
"""

import json
import logging

import pytest

from finops_control import config as config_module
from finops_control.config import FinopsConfig, get_config, reload_config
from finops_control.errors import (
    ConflictError, HandlerError, NotFoundError, StorageError, ValidationError
)
from finops_control.logging_config import JSONFormatter, log_action, setup_logging
from finops_control.tenancy import tenant_context


class TestConfig:
    """Environment-driven settings"""

    def test_defaults(self, monkeypatch):
        for name in ("FINOPS_MISSING_PERMISSION_POLICY", "FINOPS_MAKER_CHECKER_ENABLED"):
            monkeypatch.delenv(name, raising=False)
        config = FinopsConfig()
        assert config.missing_permission_policy == "allow"
        assert config.maker_checker_enabled is True
        assert config.timeline_timezone == "UTC"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FINOPS_MISSING_PERMISSION_POLICY", "require_approval")
        monkeypatch.setenv("FINOPS_DATABASE_URL", "memory://")
        config = FinopsConfig()
        assert config.missing_permission_policy == "require_approval"
        assert config.database_url == "memory://"

    def test_invalid_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("FINOPS_MISSING_PERMISSION_POLICY", "sometimes")
        with pytest.raises(Exception):
            FinopsConfig()

    def test_reload(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("FINOPS_DEFAULT_TENANT", "bank-z")
        try:
            assert reload_config().default_tenant == "bank-z"
            assert get_config().default_tenant == "bank-z"
        finally:
            config_module.config = original


class TestErrors:
    """Status codes and wire form"""

    @pytest.mark.parametrize("error_type,status", [
        (ValidationError, 400),
        (NotFoundError, 404),
        (ConflictError, 409),
        (HandlerError, 500),
        (StorageError, 500),
    ])
    def test_status_codes(self, error_type, status):
        error = error_type("boom", audit_event_id=7)
        assert error.status_code == status
        assert error.to_dict() == {
            "code": error_type.code,
            "message": "boom",
            "status_code": status,
            "correlation_id": 7,
        }

    def test_builtin_bases(self):
        assert isinstance(ValidationError("x"), ValueError)
        assert isinstance(NotFoundError("x"), LookupError)


class TestLogging:
    """JSON log lines"""

    def _record(self, **extra):
        record = logging.LogRecord("finops.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_fields(self):
        line = JSONFormatter().format(self._record(user_id="alice", action="CREATE_JOURNALENTRY",
                                                   correlation_id=5))
        data = json.loads(line)
        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["user_id"] == "alice"
        assert data["action"] == "CREATE_JOURNALENTRY"
        assert data["correlation_id"] == 5
        assert "resource" not in data

    def test_tenant_from_context(self):
        with tenant_context("bank-a"):
            data = json.loads(JSONFormatter().format(self._record()))
        assert data["tenant_id"] == "bank-a"

    def test_log_action_passes_structured_fields(self, caplog):
        logger = logging.getLogger("finops.test_log_action")
        with caplog.at_level(logging.INFO, logger="finops.test_log_action"):
            log_action(logger, "info", "posted", user_id="alice", resource="T1",
                       correlation_id=3, extra={"lines": 2})
        record = caplog.records[-1]
        assert record.user_id == "alice"
        assert record.resource == "T1"
        assert record.correlation_id == 3
        assert record.extra_data == {"lines": 2}

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="finops.test_setup")
        logger = setup_logging("WARNING", logger_name="finops.test_setup", log_format="text")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
