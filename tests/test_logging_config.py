"""Tests for structured logging helpers."""
import json
import logging

from gatekeeper.logging_config import (
    CorrelationContext,
    JSONFormatter,
    StructuredFormatter,
    correlation_id_var,
    mask_wallet,
    participant_id_var,
)


def _record(msg="hello"):
    return logging.LogRecord("gatekeeper.test", logging.INFO, __file__, 10, msg, None, None)


class TestMaskWallet:

    def test_masks_to_prefix(self):
        assert mask_wallet("7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU") == "7xKXtg2C..."

    def test_missing(self):
        assert mask_wallet(None) == "<none>"
        assert mask_wallet("") == "<none>"


class TestCorrelationContext:

    def test_sets_and_restores(self):
        assert correlation_id_var.get() is None
        with CorrelationContext(correlation_id="abc", participant_id=42):
            assert correlation_id_var.get() == "abc"
            assert participant_id_var.get() == "42"
            with CorrelationContext(correlation_id="inner"):
                assert correlation_id_var.get() == "inner"
                assert participant_id_var.get() == "42"
            assert correlation_id_var.get() == "abc"
        assert correlation_id_var.get() is None
        assert participant_id_var.get() is None

    def test_generates_id(self):
        with CorrelationContext() as ctx:
            assert correlation_id_var.get() == ctx.correlation_id
            assert len(ctx.correlation_id) == 36


class TestFormatters:

    def test_json_includes_context_and_extra_fields(self):
        formatter = JSONFormatter(extra_fields={"service": "gatekeeper"})
        with CorrelationContext(correlation_id="corr-1", participant_id=7):
            data = json.loads(formatter.format(_record()))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "corr-1"
        assert data["participant_id"] == "7"
        assert data["service"] == "gatekeeper"

    def test_text_format(self):
        with CorrelationContext(correlation_id="corr-123456789", participant_id=7):
            line = StructuredFormatter().format(_record("re-check done"))

        assert "[INFO]" in line
        assert "re-check done" in line
        assert "correlation_id=corr-123" in line
        assert "participant_id=7" in line
