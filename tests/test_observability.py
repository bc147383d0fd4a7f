"""Tests for observability utilities."""

import json
import logging
from datetime import timezone

from wabridge.infra.hashing import hash_identifier
from wabridge.infra.time import parse_timestamp, utc_now
from wabridge.observability.correlation import (
    generate_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from wabridge.observability.logging import JsonFormatter, get_logger
from wabridge.observability.redaction import (
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_phone_number(self):
        result = redact_string("Call me at +44 7911 123456")
        assert "7911" not in result
        assert "[REDACTED]" in result

    def test_redact_chat_address(self):
        result = redact_string("whatsapp:+447911123456")
        assert "447911123456" not in result
        assert "whatsapp:" not in result
        assert result == "[REDACTED]"

    def test_redact_email(self):
        result = redact_string("Email: 447911123456@wa.example.com")
        assert "wa.example.com" not in result
        assert "[REDACTED]" in result

    def test_case_ids_survive(self):
        assert redact_string("1001") == "1001"

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"Body": "Hello there", "From": "whatsapp:+447911123456"})
        assert "Hello" not in result
        assert "447911123456" not in result
        assert "Body" in result
        assert "From" in result

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "a" not in result
        assert "len=3" in result

    def test_redact_value_scalars(self):
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"
        assert redact_value(3) == "3"
        assert redact_value(object()) == "<object>"

    def test_safe_log_context(self):
        ctx = safe_log_context(phone="+447911123456", count=42)
        assert "[REDACTED]" in ctx["phone"]
        assert ctx["count"] == "42"


class TestHashIdentifier:
    def test_short_and_deterministic(self):
        a = hash_identifier("whatsapp:+447911123456")
        assert len(a) == 12
        assert a == hash_identifier("whatsapp:+447911123456")

    def test_distinct_inputs(self):
        assert hash_identifier("whatsapp:+447911123456") != hash_identifier(
            "whatsapp:+447911123457"
        )


class TestTime:
    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo == timezone.utc

    def test_parse_round_trip(self):
        now = utc_now()
        assert parse_timestamp(now.isoformat()) == now

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00").tzinfo == timezone.utc


class TestCorrelation:
    def test_set_and_reset(self):
        cid = generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            assert get_correlation_id() == cid
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() != cid


class TestJsonFormatter:
    """One JSON object per record."""

    def _record(self, **extra):
        record = logging.LogRecord(
            name="wabridge.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="case resolved",
            args=(),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        line = JsonFormatter().format(self._record())
        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "wabridge.test"
        assert data["message"] == "case resolved"
        assert "timestamp" in data

    def test_extra_fields_merged(self):
        record = self._record(extra_fields=safe_log_context(source="store", case_id="42"))
        data = json.loads(JsonFormatter().format(record))
        assert data["source"] == "store"
        assert data["case_id"] == "42"

    def test_correlation_id_included(self):
        token = set_correlation_id("abc123")
        try:
            data = json.loads(JsonFormatter().format(self._record()))
        finally:
            reset_correlation_id(token)
        assert data["correlationId"] == "abc123"


class TestGetLogger:
    def test_module_loggers_share_parent_handler(self):
        get_logger("wabridge.a")
        get_logger("wabridge.b")
        parent = logging.getLogger("wabridge")
        assert len(parent.handlers) == 1
        assert isinstance(parent.handlers[0].formatter, JsonFormatter)
        assert not logging.getLogger("wabridge.a").handlers
