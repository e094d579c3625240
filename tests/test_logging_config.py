"""Tests for structured logging."""

import json
import logging

import pytest

from inferno.logging_config import (
    CorrelationContext,
    JSONFormatter,
    StructuredFormatter,
    get_logger,
    operation_class_var,
    operation_id_var,
    setup_logging,
)


def make_record(msg="hello", **attrs):
    record = logging.LogRecord("inferno.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCorrelationContext:
    def test_sets_and_resets(self):
        """Context vars are set inside and restored outside."""
        with CorrelationContext(operation_class="buyback", operation_id="abc123"):
            assert operation_id_var.get() == "abc123"
            assert operation_class_var.get() == "buyback"
        assert operation_id_var.get() is None
        assert operation_class_var.get() is None

    def test_generates_id(self):
        """An operation id is generated when none is given."""
        with CorrelationContext() as ctx:
            assert ctx.operation_id
            assert operation_id_var.get() == ctx.operation_id


class TestFormatters:
    def test_json_includes_operation(self):
        """JSON lines carry the operation id, class and extra fields."""
        formatter = JSONFormatter(extra_fields={"service": "inferno"})
        with CorrelationContext(operation_class="milestone", operation_id="op-1"):
            data = json.loads(formatter.format(make_record(extra_data={"quantity": 5})))

        assert data["message"] == "hello"
        assert data["operation_id"] == "op-1"
        assert data["operation_class"] == "milestone"
        assert data["service"] == "inferno"
        assert data["extra"] == {"quantity": 5}
        assert data["timestamp"].endswith("Z")

    def test_console_format(self):
        """Console lines show the context and extra fields."""
        formatter = StructuredFormatter(use_color=False)
        with CorrelationContext(operation_class="buyback", operation_id="deadbeefcafe"):
            line = formatter.format(make_record(extra_data={"reference": "sig"}))

        assert "[INFO]" in line
        assert "buyback op=deadbeef" in line
        assert "reference=sig" in line


class TestSetupLogging:
    def test_writes_json_file(self, tmp_path, restore_root_logger):
        """Structured records land in the rotating JSON log."""
        setup_logging(log_dir=tmp_path, level="DEBUG", console_output=False)
        get_logger("inferno.audit").info("Burn recorded", quantity=42)
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "inferno.log").read_text().strip().splitlines()
        data = json.loads(lines[-1])
        assert data["message"] == "Burn recorded"
        assert data["extra"] == {"quantity": 42}
