"""Redaction helpers for safe logging. All external data must pass through these."""

import re
from typing import Any

# Card numbers (13-19 digits, optionally grouped) must never reach the logs
_CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
# Gateway credentials: Stripe sk_/rk_/whsec_ keys, Paystack sk_ keys
_SECRET_KEY_PATTERN = re.compile(r"\b(?:sk|rk|whsec)_[A-Za-z0-9_]{6,}\b")

# Our own identifiers (UUIDs, booking numbers, transaction/refund ids)
# contain long digit runs but are safe to log verbatim
_IDENTIFIER_PATTERN = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
    r"|(?:SP|TXN|REF)[0-9A-Z]+"
)

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact card numbers, secrets and contact details from a string."""
    if _IDENTIFIER_PATTERN.fullmatch(value):
        return value
    result = _SECRET_KEY_PATTERN.sub(_REDACTED, value)
    result = _CARD_PATTERN.sub(_REDACTED, result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values (gateway payloads carry PII)
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    # Decimal amounts, enums, dates: their str() carries no PII
    if hasattr(value, "as_tuple") or hasattr(value, "isoformat"):
        return str(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return f"<{type(value).__name__}>"


def id_prefix(value: str | None, length: int = 8) -> str | None:
    """Shorten an external identifier for logs (gateway refs, event ids)."""
    if value is None:
        return None
    return value[:length] if len(value) >= length else value


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
