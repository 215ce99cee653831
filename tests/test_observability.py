"""Tests for observability utilities."""

import json
import logging
from decimal import Decimal

from marketpay.domain.models import PaymentStatus
from marketpay.observability.correlation import (
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
    reset_correlation_id,
)
from marketpay.observability.logging import JsonFormatter
from marketpay.observability.redaction import (
    id_prefix,
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_card_number(self):
        result = redact_string("card 4242 4242 4242 4242 declined")
        assert "4242 4242" not in result
        assert "[REDACTED]" in result

    def test_redact_gateway_secret(self):
        result = redact_string("using key sk_live_abcdef123456")
        assert "sk_live_abcdef123456" not in result

    def test_redact_email(self):
        result = redact_string("Email: payer@example.com")
        assert "payer@example.com" not in result
        assert "[REDACTED]" in result

    def test_own_identifiers_kept(self):
        assert redact_string("TXN1740906000ABC123") == "TXN1740906000ABC123"
        assert redact_string("SP20260302AB12") == "SP20260302AB12"

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"email": "payer@example.com", "amount": 10})
        assert "payer@example.com" not in result
        assert "email" in result

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "len=3" in result

    def test_amounts_and_enums_pass_through(self):
        assert redact_value(Decimal("102.50")) == "102.50"
        assert redact_value(PaymentStatus.COMPLETED) == "completed"
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"

    def test_safe_log_context(self):
        ctx = safe_log_context(email="payer@example.com", attempts=2)
        assert "[REDACTED]" in ctx["email"]
        assert ctx["attempts"] == "2"

    def test_id_prefix(self):
        assert id_prefix("evt_1234567890") == "evt_1234"
        assert id_prefix("abc") == "abc"
        assert id_prefix(None) is None


class TestCorrelation:
    def test_scope_generates_and_restores(self):
        assert get_correlation_id() == ""
        with correlation_scope() as cid:
            assert cid
            assert get_correlation_id() == cid
        assert get_correlation_id() == ""

    def test_scope_inherits_current_id(self):
        token = set_correlation_id("outer")
        try:
            with correlation_scope() as cid:
                assert cid == "outer"
        finally:
            reset_correlation_id(token)


class TestJsonFormatter:
    def _record(self, **extra):
        record = logging.LogRecord("marketpay.test", logging.INFO, __file__, 1, "payment_completed", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_extra_fields_merged(self):
        line = JsonFormatter().format(self._record(extra_fields={"payment_id": "p-1"}))
        data = json.loads(line)
        assert data["message"] == "payment_completed"
        assert data["level"] == "INFO"
        assert data["payment_id"] == "p-1"

    def test_correlation_id_included(self):
        with correlation_scope("cid-42"):
            data = json.loads(JsonFormatter().format(self._record()))
        assert data["correlationId"] == "cid-42"
