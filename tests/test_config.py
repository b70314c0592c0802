"""
Tests for configuration loading and structured logging
"""

import io
import json
import logging

import pytest

from loan_servicing import config as config_module
from loan_servicing.config import LoanServicingConfig, reload_config, get_config
from loan_servicing.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestConfig:

    def test_defaults(self):
        config = LoanServicingConfig(_env_file=None)
        assert config.database_url == "sqlite:///loan_servicing.db"
        assert config.receipt_prefix == "RPT"
        assert config.strict_balance_validation is False
        assert config.assess_penalties_on_payment is True

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOAN_SERVICING_DATABASE_URL", "memory://")
        monkeypatch.setenv("LOAN_SERVICING_STRICT_BALANCE_VALIDATION", "true")
        monkeypatch.setenv("LOAN_SERVICING_LOCK_TIMEOUT_SECONDS", "2.5")
        original = get_config()
        try:
            reloaded = reload_config()
            assert get_config() is reloaded
            assert reloaded.database_url == "memory://"
            assert reloaded.strict_balance_validation is True
            assert reloaded.lock_timeout_seconds == 2.5
        finally:
            config_module.config = original


class TestLogging:

    @pytest.fixture
    def stream(self):
        return io.StringIO()

    @pytest.fixture
    def logger(self, stream):
        logger = setup_logging(level="INFO", logger_name="loan_servicing.test")
        logger.handlers[0].setStream(stream)
        yield logger
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.propagate = True

    def test_json_output(self, logger, stream):
        log_action(logger, "info", "Payment RPT001 allocated", user_id="teller1",
                   action="allocate_payment", resource="loan:LOAN001",
                   extra={"amount": "100.00"})

        entry = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert entry["level"] == "INFO"
        assert entry["message"] == "Payment RPT001 allocated"
        assert entry["user_id"] == "teller1"
        assert entry["action"] == "allocate_payment"
        assert entry["resource"] == "loan:LOAN001"
        assert entry["extra"] == {"amount": "100.00"}
        assert "correlation_id" not in entry

    def test_level_filtering(self, logger, stream):
        log_action(logger, "debug", "not shown")
        assert stream.getvalue() == ""

    def test_text_format(self, stream):
        logger = setup_logging(level="WARNING", logger_name="loan_servicing.text_test",
                               log_format="text")
        logger.handlers[0].setStream(stream)
        try:
            logger.warning("Overdue sweep processed 3 loans")
            output = stream.getvalue()
            assert "WARNING" in output
            assert "Overdue sweep processed 3 loans" in output
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
            logger.propagate = True

    def test_json_formatter_on_record(self):
        record = logging.LogRecord("loan_servicing.engine", logging.WARNING, __file__, 0,
                                   "allocate_payment rejected", (), None)
        record.action = "allocate_payment"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "WARNING"
        assert entry["action"] == "allocate_payment"

    def test_get_logger(self):
        assert get_logger("loan_servicing.engine") is logging.getLogger("loan_servicing.engine")
