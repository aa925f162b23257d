"""
Tests for logging setup, redaction and the audit port.
"""

import logging
import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.utils.logger import (
    REDACTED, LoggingAuditPort, NullAuditPort, log_execution_time, redact, setup_logging
)


class TestRedaction:
    """Test cases for redact."""

    def test_sensitive_keys(self):
        data = redact({"vat_number": "IE1234567T", "amount": 23, "text": "full document"})

        assert data == {"vat_number": REDACTED, "amount": 23, "text": REDACTED}

    def test_sensitive_values(self):
        assert redact("Supplier IE1234567T paid") == f"Supplier {REDACTED} paid"
        assert redact(["accounts@example.ie"]) == [REDACTED]

    def test_nested(self):
        data = redact({"context": {"api_key": "sk-abcdefgh1234"}})

        assert data["context"]["api_key"] == REDACTED


class TestAuditPorts:
    """Test cases for the audit port implementations."""

    def test_logging_audit_port_redacts(self, caplog):
        caplog.set_level(logging.INFO, logger="vatdoc.audit")
        port = LoggingAuditPort()

        port.audit("vat_extraction_completed", file_name="invoice.pdf", vat_number="IE1234567T")

        assert "AUDIT vat_extraction_completed" in caplog.text
        assert "invoice.pdf" in caplog.text
        assert "IE1234567T" not in caplog.text

    def test_logging_audit_port_error(self, caplog):
        caplog.set_level(logging.INFO, logger="vatdoc.audit")
        port = LoggingAuditPort()

        port.error("Pipeline failure", error=ValueError("bad grid"))

        assert "ValueError: bad grid" in caplog.text

    def test_null_audit_port_keeps_events(self):
        port = NullAuditPort()
        port.warn("Vision failed", code="VISION_SERVICE_UNAVAILABLE")
        port.audit("vat_extraction_completed", method="PATTERN")

        assert port.events == [
            ("warn", "Vision failed", {"code": "VISION_SERVICE_UNAVAILABLE"}),
            ("audit", "vat_extraction_completed", {"method": "PATTERN"}),
        ]


class TestLoggingSetup:
    """Test cases for setup_logging and log_execution_time."""

    @pytest.fixture
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield root
        root.handlers = handlers
        root.setLevel(level)

    def test_setup_logging_with_file(self, tmp_path, restore_root):
        setup_logging("DEBUG", log_dir=str(tmp_path))

        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 2
        assert list(tmp_path.glob("vatdoc_*.log"))

    def test_log_execution_time(self):
        @log_execution_time
        def add(a, b):
            return a + b

        assert add(2, 3) == 5

    def test_log_execution_time_reraises(self):
        @log_execution_time
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            fail()
