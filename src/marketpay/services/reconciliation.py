"""Gateway webhook reconciliation.

Signature first, then receipt, then transition. Every authenticated event
gets an Ack, including duplicates, unknown payments and events that no
longer apply; only a signature failure is rejected. This keeps provider
retry storms away while never applying an unauthenticated event.
"""

from __future__ import annotations

from dataclasses import dataclass

from marketpay.domain import bookings, payments
from marketpay.domain.models import BookingPaymentStatus, PaymentStatus
from marketpay.gateways.base import EventKind, GatewayEvent
from marketpay.gateways.registry import GatewayRegistry
from marketpay.infra.db import txn
from marketpay.infra.repositories import (
    bookings_repository,
    gateway_events_repository,
    payments_repository,
)
from marketpay.infra.time import utc_now
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import id_prefix, safe_log_context
from marketpay.services import payment_service
from marketpay.services.notifications import Notifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class WebhookAck:
    """What happened to an authenticated event. Always a 2xx to the provider."""

    outcome: str  # applied | duplicate | ignored | unknown_payment | not_applicable
    event_id: str
    event_type: str


def handle_gateway_webhook(
    gateway: str,
    raw_payload: bytes,
    signature: str,
    *,
    gateways: GatewayRegistry,
    notifier: Notifier | None = None,
) -> WebhookAck:
    """Apply one provider event idempotently.

    This function:
    1. Validates the signature via the gateway's adapter (fails closed)
    2. Inserts the (gateway, event_id) receipt; a replay stops here
    3. Resolves and locks the payment by gateway transaction id
    4. Applies the transition only if it is still legal

    Raises:
        SignatureInvalidError: Unknown gateway or bad signature. Nothing
            is recorded.
    """
    adapter = gateways.for_webhook(gateway)
    event = adapter.validate_webhook_signature(raw_payload, signature)
    gateway = adapter.name
    correlation_id = get_correlation_id()

    logger.info(
        "gateway webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                gateway=gateway,
                event_id_prefix=id_prefix(event.event_id),
                event_type=event.event_type,
            )
        },
    )

    notes: list[payment_service.Notification] = []
    with txn() as cur:
        if not gateway_events_repository.record_event_receipt(
            cur, gateway=gateway, event_id=event.event_id, event_type=event.event_type
        ):
            logger.info(
                "duplicate gateway event ignored",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        event_id_prefix=id_prefix(event.event_id),
                    )
                },
            )
            return _ack("duplicate", event)

        if event.kind == EventKind.UNHANDLED or not event.gateway_transaction_id:
            return _ack("ignored", event)

        locked = payment_service.lock_for_gateway_transaction(
            cur, gateway=gateway, gateway_transaction_id=event.gateway_transaction_id
        )
        if locked is None:
            logger.info(
                "gateway event for unknown payment discarded",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        gateway_transaction_prefix=id_prefix(event.gateway_transaction_id),
                        event_type=event.event_type,
                    )
                },
            )
            return _ack("unknown_payment", event)

        payment, booking = locked
        now = utc_now()

        if event.kind == EventKind.PAYMENT_SUCCEEDED:
            if payment.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                if payment.status == PaymentStatus.PENDING:
                    payments.mark_processing(payment, now=now, enforce_expiry=False)
                notes = payment_service.apply_payment_success(cur, payment, booking, now=now)
            else:
                # completed already: a replay under a new event id
                if payment.status != PaymentStatus.COMPLETED:
                    _log_needs_manual(event, payment.id, payment.status)
                return _ack("not_applicable", event)

        elif event.kind == EventKind.PAYMENT_FAILED:
            if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                return _ack("not_applicable", event)
            notes = payment_service.apply_payment_failure(
                cur, payment, booking, now=now,
                reason=event.failure_reason or "payment failed at gateway",
                code="gateway_reported_failure",
            )

        elif event.kind == EventKind.DISPUTE_CREATED:
            if payment.status != PaymentStatus.COMPLETED:
                if payment.status != PaymentStatus.DISPUTED:
                    _log_needs_manual(event, payment.id, payment.status)
                return _ack("not_applicable", event)
            payments.mark_disputed(
                payment, now=now, dispute_id=event.dispute_id, reason=event.dispute_reason
            )
            if booking.payment_status == BookingPaymentStatus.PAID:
                bookings.set_payment_status(
                    booking, BookingPaymentStatus.DISPUTED, now=now,
                    description=f"Payment disputed: {event.dispute_reason or 'unspecified'}",
                )
            bookings.mark_disputed(booking, now=now, reason=event.dispute_reason)
            payments_repository.save_payment(cur, payment)
            bookings_repository.save_booking(cur, booking)
            logger.warning(
                "payment_disputed",
                extra={
                    "extra_fields": safe_log_context(
                        correlationId=correlation_id,
                        payment_id=payment.id,
                        booking_id=booking.id,
                    )
                },
            )
            notes = [
                ("payment_disputed", payment.payee_id, {"payment_id": payment.id, "booking_id": booking.id}),
                ("payment_disputed", payment.payer_id, {"payment_id": payment.id, "booking_id": booking.id}),
            ]

    payment_service.dispatch_notifications(notifier, notes)
    return _ack("applied", event)


def _ack(outcome: str, event: GatewayEvent) -> WebhookAck:
    return WebhookAck(outcome=outcome, event_id=event.event_id, event_type=event.event_type)


def _log_needs_manual(event: GatewayEvent, payment_id: str, status: PaymentStatus) -> None:
    logger.error(
        "gateway event conflicts with local payment state - needs manual reconciliation",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                payment_id=payment_id,
                status=status,
                event_type=event.event_type,
            )
        },
    )
