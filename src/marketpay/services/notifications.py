"""Fire-and-forget notifications after committed state changes.

Delivery (email/SMS/push) belongs to another service. We either POST the
event to NOTIFY_WEBHOOK_URL or, when unset, just log it. A failed delivery
never affects the transition that triggered it.
"""

from __future__ import annotations

import os
from typing import Any, Protocol

import requests

from marketpay.observability.correlation import CORRELATION_ID_HEADER, get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

NOTIFICATION_EVENTS = frozenset(
    {
        "booking_requested",
        "booking_confirmed",
        "booking_started",
        "booking_completed",
        "booking_cancelled",
        "reschedule_requested",
        "reschedule_approved",
        "reschedule_rejected",
        "payment_completed",
        "payment_failed",
        "refund_processed",
        "escrow_released",
        "payment_disputed",
    }
)


class Notifier(Protocol):
    def notify(self, event: str, recipient: str, payload: dict[str, Any]) -> None: ...


class LogNotifier:
    """Records the notification in the log only (local dev, tests)."""

    def notify(self, event: str, recipient: str, payload: dict[str, Any]) -> None:
        logger.info(
            "notification",
            extra={
                "extra_fields": safe_log_context(
                    event=event,
                    recipient=recipient,
                    payload=payload,
                )
            },
        )


class HttpNotifier:
    """POSTs events to the notification service."""

    def __init__(self, url: str, timeout: float | None = None) -> None:
        self._url = url
        self._timeout = timeout or float(os.environ.get("NOTIFY_HTTP_TIMEOUT", "5"))

    def notify(self, event: str, recipient: str, payload: dict[str, Any]) -> None:
        response = requests.post(
            self._url,
            json={"event": event, "recipient": recipient, "payload": payload},
            headers={CORRELATION_ID_HEADER: get_correlation_id()},
            timeout=self._timeout,
        )
        response.raise_for_status()


def build_notifier() -> Notifier:
    url = os.environ.get("NOTIFY_WEBHOOK_URL", "")
    if url:
        return HttpNotifier(url)
    return LogNotifier()


def notify_safely(notifier: Notifier | None, event: str, recipient: str, payload: dict[str, Any]) -> None:
    """Deliver a notification, logging instead of raising on failure.

    Must only be called after the triggering transaction committed.
    """
    if notifier is None:
        return
    if event not in NOTIFICATION_EVENTS:
        logger.error(
            "unknown notification event dropped",
            extra={"extra_fields": safe_log_context(event=event, correlationId=get_correlation_id())},
        )
        return
    try:
        notifier.notify(event, recipient, payload)
    except Exception:
        logger.exception(
            "notification delivery failed",
            extra={
                "extra_fields": safe_log_context(
                    event=event,
                    recipient=recipient,
                    correlationId=get_correlation_id(),
                )
            },
        )
