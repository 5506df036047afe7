"""
Tests for configuration loading and structured logging
"""

import json
import logging

from lending_core.config import LendingConfig, get_config, reload_config
from lending_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Test environment based configuration"""

    def test_defaults(self):
        config = LendingConfig()
        assert config.allowed_term_weeks == [4, 6, 8, 12, 16]
        assert config.enable_interest_calculations is False
        assert config.derogatory_review_after_days == 30
        assert config.derogatory_review_window_days == 7

    def test_environment_overrides(self, monkeypatch):
        """Test LENDING_ prefixed variables override defaults"""
        monkeypatch.setenv("LENDING_CONVENIENCE_FEE", "2.50")
        monkeypatch.setenv("LENDING_ENABLE_INTEREST_CALCULATIONS", "true")
        monkeypatch.setenv("LENDING_DEROGATORY_REVIEW_AFTER_DAYS", "45")

        config = LendingConfig()

        assert config.convenience_fee == "2.50"
        assert config.enable_interest_calculations is True
        assert config.derogatory_review_after_days == 45

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.setenv("LENDING_API_PORT", "9100")
        assert reload_config().api_port == 9100
        assert get_config().api_port == 9100

        monkeypatch.delenv("LENDING_API_PORT")
        reload_config()


class TestLogging:
    """Test structured log output"""

    def make_record(self, **extra):
        record = logging.LogRecord(
            name="lending_core.funding", level=logging.ERROR, pathname=__file__, lineno=1,
            msg="Funding failed at %s", args=("create_invoices",), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_fields(self):
        """Test loan and step fields are included and empty fields dropped"""
        output = json.loads(JSONFormatter().format(self.make_record(loan_id="L1", step="create_invoices")))

        assert output["level"] == "ERROR"
        assert output["logger"] == "lending_core.funding"
        assert output["message"] == "Funding failed at create_invoices"
        assert output["loan_id"] == "L1"
        assert output["step"] == "create_invoices"
        assert "user_id" not in output

    def test_log_action(self, caplog):
        """Test structured fields are attached to the record"""
        logger = get_logger("lending_core.api.loans")
        with caplog.at_level(logging.INFO, logger="lending_core.api.loans"):
            log_action(logger, "info", "Closure requested", user_id="admin", action="close_loan",
                       loan_id="L1", extra={"reason": "early_payoff"})

        record = caplog.records[-1]
        assert record.getMessage() == "Closure requested"
        assert record.user_id == "admin"
        assert record.action == "close_loan"
        assert record.loan_id == "L1"
        assert record.extra == {"reason": "early_payoff"}

    def test_setup_logging(self, tmp_path):
        """Test JSON lines are written to the configured file"""
        log_file = tmp_path / "lending.log"
        logger = setup_logging(level="DEBUG", logger_name="lending_core.test_setup", log_file=str(log_file))

        logger.info("Sweep finished", extra={"loan_id": "L1"})
        for handler in logger.handlers:
            handler.flush()
            handler.close()
        logger.handlers.clear()

        line = json.loads(log_file.read_text().strip())
        assert line["message"] == "Sweep finished"
        assert line["loan_id"] == "L1"
