"""Payment orchestration: intents, confirmation, refunds, escrow, retries.

Lock order is always booking row first, payment row second; every path
that touches both follows it so concurrent confirm/cancel/webhook calls
cannot deadlock.

Gateway calls never run while a payment is left in an undecided state:
confirmation marks the payment processing and commits, calls the gateway
with no lock held, then applies the outcome in a second transaction.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from marketpay.domain import bookings, payments
from marketpay.domain.errors import (
    AuthorizationError,
    BookingExpiredError,
    DuplicatePaymentError,
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    MarketpayError,
    NotFoundError,
    PaymentExpiredError,
    ValidationError,
    VerificationFailedError,
)
from marketpay.domain.fees import compute_payment_fees, quantize_money
from marketpay.domain.models import (
    SYSTEM_ACTOR,
    Actor,
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Gateway,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
)
from marketpay.gateways.base import GatewayIntent, GatewayVerification
from marketpay.gateways.registry import GatewayRegistry
from marketpay.infra.db import txn
from marketpay.infra.repositories import bookings_repository, payments_repository
from marketpay.infra.time import utc_now
from marketpay.observability.correlation import correlation_scope, get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context
from marketpay.services.notifications import Notifier, notify_safely

logger = get_logger(__name__)

# (event, recipient, payload) queued inside a transaction, sent after commit
Notification = tuple[str, str, dict[str, Any]]


@dataclass
class PaymentIntentResult:
    payment: Payment
    intent: GatewayIntent


@dataclass
class RefundResult:
    payment: Payment
    refund: RefundRecord


# ── Configuration ─────────────────────────────────────────


def _base_currency() -> str:
    return os.environ.get("BASE_CURRENCY", "NGN").upper()


def _max_attempts() -> int:
    return int(os.environ.get("PAYMENT_MAX_ATTEMPTS", str(payments.DEFAULT_MAX_ATTEMPTS)))


def _escrow_hold_hours() -> int:
    return int(os.environ.get("ESCROW_HOLD_HOURS", "72"))


# ── Intent creation ───────────────────────────────────────


def create_payment_intent(
    booking_id: str,
    *,
    actor: Actor,
    payment_method: PaymentMethod,
    gateway: Gateway,
    gateways: GatewayRegistry,
    email: str | None = None,
    exchange_rate: Decimal = Decimal("1"),
) -> PaymentIntentResult:
    """Open a pending payment for a booking.

    This function:
    1. Locks the booking (serializes concurrent intents for it)
    2. Lazily expires a stale pending payment, else rejects a duplicate
       (a booking whose payment was refunded or disputed takes no new one)
    3. Creates the provider-side intent (idempotency key payment:<txn id>)
    4. Inserts the payment; the active-payment unique index has the final say
    5. Closes the retries of earlier failed payments it replaces

    Raises:
        NotFoundError: Booking does not exist.
        AuthorizationError: Caller is not the requester.
        InvalidTransitionError: Booking is not awaiting payment.
        DuplicatePaymentError: Booking already has an active payment.
        GatewayError / GatewayUnavailableError: Intent creation failed.
    """
    now = utc_now()
    adapter = gateways.get(gateway)

    with txn() as cur:
        booking = _load_booking(cur, booking_id, for_update=True)
        if not actor.is_privileged and actor.id != booking.requester_id:
            raise AuthorizationError("only the requester can pay for a booking")
        if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            raise InvalidTransitionError("booking", booking.status.value, "accept a payment")
        if bookings.is_expired(booking, now):
            raise BookingExpiredError("booking", booking.status.value, "accept a payment", "booking expired")
        if booking.payment_status in (BookingPaymentStatus.REFUNDED, BookingPaymentStatus.DISPUTED):
            raise InvalidTransitionError(
                "booking payment", booking.payment_status.value, "accept a payment",
                "the earlier payment was refunded or disputed",
            )

        active = payments_repository.find_active_payment(cur, booking_id, for_update=True)
        if active is not None:
            if payments.expire(active, now):
                payments_repository.save_payment(cur, active)
                logger.info(
                    "stale pending payment expired",
                    extra={"extra_fields": safe_log_context(payment_id=active.id)},
                )
            else:
                raise DuplicatePaymentError(
                    f"booking {booking_id} already has a {active.status.value} payment"
                )

        payment = payments.new_payment(
            booking,
            payer_id=actor.id if not actor.is_privileged else booking.requester_id,
            payment_method=payment_method,
            gateway=gateway,
            now=now,
            exchange_rate=exchange_rate,
            max_attempts=_max_attempts(),
        )
        intent = adapter.create_intent(
            amount=payment.amount,
            currency=payment.currency,
            reference=payment.transaction_id,
            idempotency_key=f"payment:{payment.transaction_id}",
            email=email,
            metadata={"booking_id": booking.id, "payment_id": payment.id},
        )
        payment.gateway_transaction_id = intent.gateway_transaction_id
        payment.gateway_reference = intent.reference

        if not payments_repository.insert_payment(cur, payment):
            raise DuplicatePaymentError(f"booking {booking_id} already has an active payment")

        # Earlier failed attempts stop retrying once a new payment replaces them
        for superseded in payments_repository.find_retryable_payments(cur, booking_id, for_update=True):
            payments.close_retries(superseded, code="superseded")
            payments_repository.save_payment(cur, superseded)

        if booking.payment_status == BookingPaymentStatus.FAILED:
            bookings.set_payment_status(
                booking, BookingPaymentStatus.PENDING, now=now,
                description="New payment attempt started",
            )
            bookings_repository.save_booking(cur, booking)

    logger.info(
        "payment intent created",
        extra={
            "extra_fields": safe_log_context(
                payment_id=payment.id,
                booking_id=booking_id,
                transaction_id=payment.transaction_id,
                gateway=gateway,
                amount=payment.amount,
                correlationId=get_correlation_id(),
            )
        },
    )
    return PaymentIntentResult(payment=payment, intent=intent)


# ── Confirmation ──────────────────────────────────────────


def confirm_payment(
    payment_id: str,
    *,
    actor: Actor,
    gateways: GatewayRegistry,
    notifier: Notifier | None = None,
    gateway_transaction_id: str | None = None,
) -> Payment:
    """Verify a payment with its gateway and apply the outcome.

    The client-reported status is never trusted; only the gateway's
    server-side verification counts.

    Returns:
        The payment. A transient gateway failure returns it failed with a
        retry scheduled rather than raising.

    Raises:
        VerificationFailedError: Gateway reports the payment did not succeed
            (the failed attempt is persisted first).
        GatewayError: Gateway refused the verification call (the failed
            attempt is persisted first, with a retry scheduled).
        DuplicatePaymentError: A failed payment was replaced by a newer one.
        InvalidTransitionError: A failed payment's booking was cancelled.
        PaymentExpiredError: Pending payment passed its 30 minute window.
    """
    now = utc_now()

    # Step 1: move to processing and commit, so the gateway call has a home state
    refusal: MarketpayError | None = None
    with txn() as cur:
        payment, booking = _lock_payment_and_booking(cur, payment_id)
        if not actor.is_privileged and actor.id != payment.payer_id:
            raise AuthorizationError("only the payer can confirm a payment")
        if (
            gateway_transaction_id
            and payment.gateway_transaction_id
            and gateway_transaction_id != payment.gateway_transaction_id
        ):
            raise ValidationError("gateway transaction id does not match this payment")

        if payment.status == PaymentStatus.COMPLETED:
            return payment
        if payment.status == PaymentStatus.PROCESSING:
            if not payments.is_stale_processing(payment, now):
                # another confirmation is verifying it right now
                return payment
            logger.warning(
                "re-verifying payment stuck in processing",
                extra={"extra_fields": safe_log_context(payment_id=payment.id, processed_at=payment.processed_at)},
            )
            payment.processed_at = now
            payment.last_attempt_at = now
            payments_repository.save_payment(cur, payment)
        else:
            if payment.status == PaymentStatus.FAILED:
                refusal, closed_code = _retry_refusal(cur, payment, booking)
                if refusal is not None:
                    payments.close_retries(payment, code=closed_code)
                    payments_repository.save_payment(cur, payment)
            if refusal is None and payment.status == PaymentStatus.FAILED:
                payments.reenter_pending(payment, now=now)
                if booking.payment_status == BookingPaymentStatus.FAILED:
                    bookings.set_payment_status(
                        booking, BookingPaymentStatus.PENDING, now=now,
                        description="Payment retry started",
                    )
                    bookings_repository.save_booking(cur, booking)
            if refusal is None:
                if payments.expire(payment, now):
                    payments_repository.save_payment(cur, payment)
                    refusal = PaymentExpiredError(
                        "payment", PaymentStatus.PENDING.value, "be confirmed", "payment expired"
                    )
                else:
                    if gateway_transaction_id and not payment.gateway_transaction_id:
                        payment.gateway_transaction_id = gateway_transaction_id
                    payments.mark_processing(payment, now=now)
                    payments_repository.save_payment(cur, payment)

    # raised after commit so the expiry or closed retries stay recorded
    if refusal is not None:
        raise refusal

    # Step 2: ask the gateway, no lock held
    verification: GatewayVerification | None = None
    unavailable: GatewayUnavailableError | None = None
    rejected: GatewayError | None = None
    try:
        verification = gateways.get(payment.gateway).verify_transaction(
            payment.gateway_transaction_id or payment.transaction_id
        )
    except GatewayUnavailableError as e:
        unavailable = e
    except GatewayError as e:
        rejected = e

    # Step 3: apply the outcome
    notes: list[Notification] = []
    with txn() as cur:
        payment, booking = _lock_payment_and_booking(cur, payment_id)
        if payment.status != PaymentStatus.PROCESSING:
            # A webhook settled it while we were verifying
            logger.info(
                "payment settled concurrently",
                extra={"extra_fields": safe_log_context(payment_id=payment_id, status=payment.status)},
            )
            return payment

        if unavailable is not None:
            notes = apply_payment_failure(
                cur, payment, booking, now=utc_now(),
                reason="gateway unavailable", code="gateway_unavailable",
            )
        elif rejected is not None:
            notes = apply_payment_failure(
                cur, payment, booking, now=utc_now(),
                reason=str(rejected), code="gateway_error",
            )
        elif verification.succeeded and _amount_matches(payment, verification):
            notes = apply_payment_success(cur, payment, booking, now=utc_now())
        else:
            if verification.succeeded:
                reason = "verified amount does not match payment"
            else:
                reason = verification.failure_reason or f"gateway status {verification.status}"
            notes = apply_payment_failure(
                cur, payment, booking, now=utc_now(), reason=reason, code="verification_failed",
            )

    dispatch_notifications(notifier, notes)

    if rejected is not None:
        raise rejected
    if payment.status == PaymentStatus.FAILED and unavailable is None:
        raise VerificationFailedError(payment.error_message or "payment verification failed")
    return payment


def apply_payment_success(
    cur: PgCursor,
    payment: Payment,
    booking: Booking,
    *,
    now: datetime,
) -> list[Notification]:
    """processing -> completed plus the booking side, in the caller's transaction.

    Fees are fixed here, escrow is held when configured, and a pending
    booking is confirmed. Re-running against a completed payment is not
    possible: callers check status under the row lock first.
    """
    fees = compute_payment_fees(
        amount=payment.amount,
        base_amount=booking.base_amount,
        gateway=payment.gateway.value,
        currency=payment.currency,
        base_currency=_base_currency(),
    )
    payments.mark_completed(payment, now=now, fees=fees)
    hold_hours = _escrow_hold_hours()
    if hold_hours > 0:
        payments.hold_in_escrow(payment, hold_period_hours=hold_hours, now=now)

    bookings.set_payment_status(
        booking, BookingPaymentStatus.PAID, now=now,
        description=f"Payment {payment.transaction_id} completed",
    )
    notes: list[Notification] = [
        ("payment_completed", payment.payer_id, _payment_payload(payment)),
    ]
    if booking.status == BookingStatus.PENDING:
        bookings.confirm(booking, now=now, actor="system", enforce_expiry=False)
        notes.append(("booking_confirmed", booking.requester_id, {"booking_id": booking.id}))
    elif booking.status == BookingStatus.CANCELLED:
        logger.error(
            "payment captured for cancelled booking - needs manual refund",
            extra={"extra_fields": safe_log_context(payment_id=payment.id, booking_id=booking.id)},
        )

    payments_repository.save_payment(cur, payment)
    bookings_repository.save_booking(cur, booking)

    logger.info(
        "payment_completed",
        extra={
            "extra_fields": safe_log_context(
                payment_id=payment.id,
                booking_id=booking.id,
                amount=payment.amount,
                total_fees=fees.total_fees,
                booking_status=booking.status,
                correlationId=get_correlation_id(),
            )
        },
    )
    return notes


def apply_payment_failure(
    cur: PgCursor,
    payment: Payment,
    booking: Booking,
    *,
    now: datetime,
    reason: str,
    code: str | None = None,
) -> list[Notification]:
    """pending|processing -> failed with retry bookkeeping, in the caller's transaction."""
    payments.mark_failed(payment, now=now, reason=reason, code=code)
    if booking.payment_status in (BookingPaymentStatus.PENDING, BookingPaymentStatus.PARTIAL):
        bookings.set_payment_status(
            booking, BookingPaymentStatus.FAILED, now=now,
            description=f"Payment attempt {payment.attempts} failed",
        )
        bookings_repository.save_booking(cur, booking)
    payments_repository.save_payment(cur, payment)

    logger.warning(
        "payment_failed",
        extra={
            "extra_fields": safe_log_context(
                payment_id=payment.id,
                attempts=payment.attempts,
                max_attempts=payment.max_attempts,
                next_retry_at=payment.next_retry_at,
                code=code,
                correlationId=get_correlation_id(),
            )
        },
    )
    return [("payment_failed", payment.payer_id, _payment_payload(payment))]


def _amount_matches(payment: Payment, verification: GatewayVerification) -> bool:
    if verification.amount is None:
        return True
    return quantize_money(verification.amount) == quantize_money(payment.amount)


# ── Refunds ───────────────────────────────────────────────


def refund_payment(
    payment_id: str,
    *,
    actor: Actor,
    reason: str,
    gateways: GatewayRegistry,
    notifier: Notifier | None = None,
    amount: Decimal | None = None,
) -> RefundResult:
    """Refund all or part of a completed payment.

    The payment stays locked across the gateway call so two refunds cannot
    both spend the same remaining balance. Gateway failure rolls back and
    records nothing.

    Raises:
        NotRefundableError: Not completed, or nothing left to refund.
    """
    if not reason or not reason.strip():
        raise ValidationError("refund reason is required")
    now = utc_now()

    with txn() as cur:
        payment, booking = _lock_payment_and_booking(cur, payment_id)
        if not actor.is_privileged and actor.id != payment.payee_id:
            raise AuthorizationError("only the payee or an admin can refund a payment")

        refund_value = payments.refundable_amount(payment, amount)
        seq = len(payment.refund_details)
        gateway_refund = gateways.get(payment.gateway).create_refund(
            gateway_transaction_id=payment.gateway_transaction_id or payment.transaction_id,
            amount=refund_value,
            reason=reason,
            idempotency_key=f"refund:{payment.id}:{seq}",
        )
        record = payments.apply_refund(
            payment,
            amount=refund_value,
            reason=reason,
            now=now,
            refund_id=payments.generate_refund_id(now),
            gateway_refund_id=gateway_refund.gateway_refund_id,
        )

        if payments.is_fully_refunded(payment):
            bookings.set_payment_status(
                booking, BookingPaymentStatus.REFUNDED, now=now,
                description=f"Payment {payment.transaction_id} fully refunded",
            )
            bookings.mark_refunded(booking, now=now)
        if booking.cancellation and booking.cancellation.refund_status == RefundStatus.PENDING:
            bookings.record_refund_outcome(
                booking, processed=True, now=now,
                detail=f"Refund of {record.amount} {payment.currency} processed",
            )

        payments_repository.save_payment(cur, payment)
        bookings_repository.save_booking(cur, booking)

    logger.info(
        "refund_processed",
        extra={
            "extra_fields": safe_log_context(
                payment_id=payment.id,
                refund_id=record.refund_id,
                amount=record.amount,
                refunded_amount=payment.refunded_amount,
                status=payment.status,
                correlationId=get_correlation_id(),
            )
        },
    )
    dispatch_notifications(notifier, [("refund_processed", payment.payer_id, {
        "payment_id": payment.id,
        "refund_id": record.refund_id,
        "amount": str(record.amount),
        "currency": payment.currency,
    })])
    return RefundResult(payment=payment, refund=record)


# ── Escrow ────────────────────────────────────────────────


def hold_payment_in_escrow(
    payment_id: str,
    *,
    actor: Actor,
    hold_period_hours: int,
    release_condition: str = payments.DEFAULT_RELEASE_CONDITION,
) -> Payment:
    if not actor.is_privileged:
        raise AuthorizationError("only an admin can place a payment in escrow")
    now = utc_now()
    with txn() as cur:
        payment = payments_repository.get_payment(cur, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(f"payment {payment_id} not found")
        payments.hold_in_escrow(
            payment, hold_period_hours=hold_period_hours, now=now,
            release_condition=release_condition,
        )
        payments_repository.save_payment(cur, payment)
    return payment


def release_escrow_for_booking(cur: PgCursor, booking: Booking, *, now: datetime) -> Payment | None:
    """Release the booking's escrowed payment, in the caller's transaction.

    Returns the payment if this call released it, None if there was
    nothing held or it was already released.
    """
    payment = payments_repository.find_latest_payment(cur, booking.id, for_update=True)
    if payment is None or not payment.escrow.is_escrowed:
        return None
    if not payments.release_from_escrow(payment, now=now):
        return None
    payments_repository.save_payment(cur, payment)
    logger.info(
        "escrow_released",
        extra={"extra_fields": safe_log_context(payment_id=payment.id, booking_id=booking.id)},
    )
    return payment


def release_payment_from_escrow(
    payment_id: str,
    *,
    actor: Actor,
    notifier: Notifier | None = None,
) -> bool:
    """Release held funds to the payee. Idempotent: False if already released."""
    if not actor.is_privileged:
        raise AuthorizationError("only an admin can release escrow")
    now = utc_now()
    with txn() as cur:
        payment = payments_repository.get_payment(cur, payment_id, for_update=True)
        if payment is None:
            raise NotFoundError(f"payment {payment_id} not found")
        released = payments.release_from_escrow(payment, now=now)
        if released:
            payments_repository.save_payment(cur, payment)
    if released:
        dispatch_notifications(notifier, [("escrow_released", payment.payee_id, _payment_payload(payment))])
    return released


# ── Retry sweep ───────────────────────────────────────────


def retry_due_payments(
    *,
    gateways: GatewayRegistry,
    notifier: Notifier | None = None,
    limit: int = 50,
) -> dict[str, int]:
    """Re-verify failed payments whose next_retry_at has passed, and
    payments left in processing past PROCESSING_STALE_AFTER.

    Driven by an external scheduler; each payment is retried in its own
    transactions so one bad payment cannot stall the batch.
    """
    counts = {"due": 0, "completed": 0, "failed": 0, "skipped": 0}
    with correlation_scope() as cid:
        with txn() as cur:
            now = utc_now()
            due_ids = payments_repository.list_due_for_retry(
                cur, now=now, stale_before=now - payments.PROCESSING_STALE_AFTER, limit=limit
            )
        counts["due"] = len(due_ids)

        for payment_id in due_ids:
            try:
                payment = confirm_payment(
                    payment_id, actor=SYSTEM_ACTOR, gateways=gateways, notifier=notifier
                )
            except (VerificationFailedError, GatewayError):
                counts["failed"] += 1
                continue
            except MarketpayError as e:
                logger.warning(
                    "retry skipped",
                    extra={
                        "extra_fields": safe_log_context(
                            payment_id=payment_id,
                            error_type=type(e).__name__,
                            correlationId=cid,
                        )
                    },
                )
                counts["skipped"] += 1
                continue
            if payment.status == PaymentStatus.COMPLETED:
                counts["completed"] += 1
            else:
                counts["failed"] += 1

        logger.info(
            "payment retry sweep finished",
            extra={"extra_fields": safe_log_context(correlationId=cid, **counts)},
        )
    return counts


# ── Reads ─────────────────────────────────────────────────


def get_payment(payment_id: str, *, actor: Actor) -> Payment:
    with txn() as cur:
        payment = payments_repository.get_payment(cur, payment_id)
    if payment is None:
        raise NotFoundError(f"payment {payment_id} not found")
    if not actor.is_privileged and actor.id not in (payment.payer_id, payment.payee_id):
        raise AuthorizationError("not a party to this payment")
    return payment


# ── Internals ─────────────────────────────────────────────


def _load_booking(cur: PgCursor, booking_id: str, *, for_update: bool = False) -> Booking:
    booking = bookings_repository.get_booking(cur, booking_id, for_update=for_update)
    if booking is None:
        raise NotFoundError(f"booking {booking_id} not found")
    return booking


def _retry_refusal(
    cur: PgCursor, payment: Payment, booking: Booking
) -> tuple[MarketpayError | None, str]:
    """Why a failed payment may not be retried any more, with the code to close it under."""
    if booking.status == BookingStatus.CANCELLED:
        return (
            InvalidTransitionError("payment", payment.status.value, "retry", "booking was cancelled"),
            "booking_cancelled",
        )
    active = payments_repository.find_active_payment(cur, booking.id, for_update=True)
    if active is not None and active.id != payment.id:
        return (
            DuplicatePaymentError(f"booking {booking.id} already has a {active.status.value} payment"),
            "superseded",
        )
    return None, ""


def _lock_payment_and_booking(cur: PgCursor, payment_id: str) -> tuple[Payment, Booking]:
    """Lock booking then payment, in that order."""
    peek = payments_repository.get_payment(cur, payment_id)
    if peek is None:
        raise NotFoundError(f"payment {payment_id} not found")
    booking = _load_booking(cur, peek.booking_id, for_update=True)
    payment = payments_repository.get_payment(cur, payment_id, for_update=True)
    return payment, booking


def lock_for_gateway_transaction(
    cur: PgCursor, *, gateway: str, gateway_transaction_id: str
) -> tuple[Payment, Booking] | None:
    """Resolve and lock a webhook's payment (booking first). None if unknown."""
    peek = payments_repository.get_payment_by_gateway_transaction(
        cur, gateway=gateway, gateway_transaction_id=gateway_transaction_id
    )
    if peek is None:
        return None
    return _lock_payment_and_booking(cur, peek.id)


def _payment_payload(payment: Payment) -> dict[str, Any]:
    return {
        "payment_id": payment.id,
        "booking_id": payment.booking_id,
        "transaction_id": payment.transaction_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status.value,
    }


def dispatch_notifications(notifier: Notifier | None, notes: list[Notification]) -> None:
    for event, recipient, payload in notes:
        notify_safely(notifier, event, recipient, payload)
