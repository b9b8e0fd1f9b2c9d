"""
Test suite for configuration and structured logging
"""

import io
import json
import logging
from decimal import Decimal

from fastpay_ledger.config import FastPayConfig, get_config, reload_config
from fastpay_ledger.logging_config import JSONFormatter, log_action, setup_logging


class TestFastPayConfig:
    """Test settings and their derived values"""

    def test_defaults(self):
        """Test the built-in ledger policy"""
        config = FastPayConfig()

        assert config.api_port == 8090
        assert config.loan_rate == Decimal('0.15')
        assert config.loan_amount_range == (Decimal('100.00'), Decimal('10000.00'))
        assert config.airtime_amount_range == (Decimal('5.00'), Decimal('500.00'))
        assert config.loan_terms_months == [6, 12, 24, 36]
        assert config.max_active_loans == 2

    def test_environment_override(self, monkeypatch):
        """Test FASTPAY_ prefixed variables"""
        monkeypatch.setenv("FASTPAY_API_PORT", "9000")
        monkeypatch.setenv("FASTPAY_ALLOW_OVERDRAFT", "true")
        monkeypatch.setenv("FASTPAY_LOAN_INTEREST_RATE", "0.2")

        config = FastPayConfig()

        assert config.api_port == 9000
        assert config.allow_overdraft is True
        assert config.loan_rate == Decimal('0.2')

    def test_reload_config(self, monkeypatch):
        """Test the global instance is rebuilt from the environment"""
        monkeypatch.setenv("FASTPAY_MAX_ACTIVE_LOANS", "3")
        try:
            assert reload_config().max_active_loans == 3
            assert get_config().max_active_loans == 3
        finally:
            monkeypatch.delenv("FASTPAY_MAX_ACTIVE_LOANS")
            reload_config()

    def test_rate_source_urls(self):
        """Test URL templates are filled in order"""
        config = FastPayConfig(rate_api_key="k123", rate_fallback_url="")

        urls = config.rate_source_urls("EUR")

        assert urls == [
            "https://v6.exchangerate-api.com/v6/k123/latest/EUR",
            "https://api.exchangerate-api.com/v4/latest/EUR",
        ]


class TestStructuredLogging:
    """Test JSON log output"""

    def setup_method(self):
        self.stream = io.StringIO()
        self.logger = logging.getLogger("fastpay.test")
        self.logger.handlers = []
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(JSONFormatter())
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def test_log_action_fields(self):
        """Test structured fields reach the JSON line"""
        log_action(self.logger, "info", "Deposit posted", account_id="acct_1",
                   action="deposit", resource="txn_1", extra={"amount": "10.00"})

        entry = json.loads(self.stream.getvalue())
        assert entry["message"] == "Deposit posted"
        assert entry["level"] == "INFO"
        assert entry["account_id"] == "acct_1"
        assert entry["action"] == "deposit"
        assert entry["resource"] == "txn_1"
        assert entry["extra"] == {"amount": "10.00"}
        assert "correlation_id" not in entry

    def test_below_level_is_dropped(self):
        """Test disabled levels produce nothing"""
        log_action(self.logger, "debug", "Noise")
        assert self.stream.getvalue() == ""

    def test_setup_logging_replaces_handlers(self):
        """Test repeated setup does not duplicate handlers"""
        logger = setup_logging("WARNING", "text", logger_name="fastpay.setup_test")
        logger = setup_logging("WARNING", "json", logger_name="fastpay.setup_test")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING
