"""Unit tests for logging configuration and the PHI log filter."""

import json
import logging

import pytest

from clinical_rag.infrastructure.logging_config import (
    PHIRedactingFilter,
    StructuredFormatter,
    setup_logging,
)


def make_record(msg, *args, level=logging.INFO):
    return logging.LogRecord("clinical_rag.test", level, __file__, 10, msg, args or None, None)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestPHIRedactingFilter:
    """Test suite for PHIRedactingFilter."""

    def test_masks_formatted_message(self):
        record = make_record("Query from %s", "Patient: John Smith")

        assert PHIRedactingFilter().filter(record) is True

        assert record.getMessage() == "Query from Patient: [PATIENTNAME_MASKED]"
        assert record.args is None

    def test_clean_message_untouched(self):
        record = make_record("Ingested %d records", 3)

        PHIRedactingFilter().filter(record)

        assert record.msg == "Ingested %d records"
        assert record.getMessage() == "Ingested 3 records"


class TestStructuredFormatter:
    """Test suite for StructuredFormatter."""

    def test_json_fields(self):
        record = make_record("hello")
        record.owner_id = "owner-1"

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["logger"] == "clinical_rag.test"
        assert data["owner_id"] == "owner-1"


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_installs_single_filtered_handler(self, restore_root_logger):
        setup_logging(use_json=True, log_level="DEBUG")

        root = restore_root_logger
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        handler = root.handlers[0]
        assert isinstance(handler.formatter, StructuredFormatter)
        assert any(isinstance(f, PHIRedactingFilter) for f in handler.filters)
        assert logging.getLogger("openai").level == logging.WARNING

    def test_filter_can_be_disabled(self, restore_root_logger):
        setup_logging(log_level="warning", redact_phi=False)

        handler = restore_root_logger.handlers[0]
        assert restore_root_logger.level == logging.WARNING
        assert not handler.filters
