"""Payment lifecycle automaton.

pending -> processing -> completed -> (refunded | disputed), with failed
and expired as exits from the early states. A failed payment re-enters
pending while it still has attempts left; after max_attempts it stays
failed for good.

Gateway I/O lives in marketpay.services.payment_service; this module only
decides which state changes are legal and records them.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from marketpay.domain import fees as fee_calc
from marketpay.domain.errors import (
    InvalidTransitionError,
    NotRefundableError,
    PaymentExpiredError,
    ValidationError,
)
from marketpay.domain.models import (
    Booking,
    DisputeDetails,
    EscrowDetails,
    Fees,
    Gateway,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
)

PENDING_PAYMENT_TTL = timedelta(minutes=30)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RELEASE_CONDITION = "service_completion"
# A processing payment older than this lost its outcome and is verified again
PROCESSING_STALE_AFTER = timedelta(minutes=5)

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.DISPUTED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}

_ID_ALPHABET = string.ascii_uppercase + string.digits


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_transaction_id(now: datetime) -> str:
    return f"TXN{int(now.timestamp() * 1000)}{_random_suffix(6)}"


def generate_refund_id(now: datetime) -> str:
    return f"REF{int(now.timestamp() * 1000)}{_random_suffix(6)}"


# ── Creation ──────────────────────────────────────────────


def new_payment(
    booking: Booking,
    *,
    payer_id: str,
    payment_method: PaymentMethod,
    gateway: Gateway,
    now: datetime,
    exchange_rate: Decimal = Decimal("1"),
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Payment:
    """Pending payment for the booking total, expiring in 30 minutes.

    amount_in_base_currency is derived here once and never recomputed.
    """
    amount = booking.total_amount
    if amount <= 0:
        raise ValidationError("payment amount must be positive")
    if exchange_rate <= 0:
        raise ValidationError("exchange rate must be positive")
    if max_attempts < 1:
        raise ValidationError("max_attempts must be at least 1")

    return Payment(
        id=str(uuid.uuid4()),
        transaction_id=generate_transaction_id(now),
        booking_id=booking.id,
        payer_id=payer_id,
        payee_id=booking.provider_id,
        amount=amount,
        currency=booking.currency,
        payment_method=payment_method,
        gateway=gateway,
        created_at=now,
        expires_at=now + PENDING_PAYMENT_TTL,
        exchange_rate=exchange_rate,
        amount_in_base_currency=fee_calc.quantize_money(amount * exchange_rate),
        max_attempts=max_attempts,
    )


# ── Queries ───────────────────────────────────────────────


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def is_expired(payment: Payment, now: datetime) -> bool:
    return payment.status == PaymentStatus.PENDING and now > payment.expires_at


def can_retry(payment: Payment) -> bool:
    return payment.status == PaymentStatus.FAILED and payment.attempts < payment.max_attempts


def is_due_for_retry(payment: Payment, now: datetime) -> bool:
    return (
        can_retry(payment)
        and payment.next_retry_at is not None
        and payment.next_retry_at <= now
    )


def is_stale_processing(payment: Payment, now: datetime) -> bool:
    return (
        payment.status == PaymentStatus.PROCESSING
        and payment.processed_at is not None
        and now - payment.processed_at >= PROCESSING_STALE_AFTER
    )


def retry_delay(attempts: int) -> timedelta:
    """Backoff after the given number of failed attempts: 1, 2, 4... minutes."""
    return timedelta(minutes=2 ** max(attempts - 1, 0))


def net_amount(payment: Payment) -> Decimal:
    if payment.fees is None:
        return payment.amount
    return fee_calc.quantize_money(fee_calc.net_amount(payment.amount, [payment.fees.total_fees]))


# ── Transitions ───────────────────────────────────────────


def expire(payment: Payment, now: datetime) -> bool:
    """Lazily expire a stale pending payment. Returns True if it expired."""
    if not is_expired(payment, now):
        return False
    payment.status = PaymentStatus.EXPIRED
    payment.next_retry_at = None
    return True


def mark_processing(payment: Payment, *, now: datetime, enforce_expiry: bool = True) -> Payment:
    """pending -> processing, before a gateway verification call.

    Provider-confirmed captures pass enforce_expiry=False: the money moved
    even if our local window lapsed.
    """
    _require(payment, PaymentStatus.PROCESSING, "start processing")
    if enforce_expiry and is_expired(payment, now):
        raise PaymentExpiredError(
            "payment", payment.status.value, "start processing", "payment expired"
        )

    payment.status = PaymentStatus.PROCESSING
    payment.processed_at = now
    payment.last_attempt_at = now
    return payment


def mark_completed(
    payment: Payment,
    *,
    now: datetime,
    fees: Fees,
    gateway_transaction_id: str | None = None,
) -> Payment:
    """processing -> completed. Fees are fixed from here on."""
    _require(payment, PaymentStatus.COMPLETED, "complete")

    payment.status = PaymentStatus.COMPLETED
    payment.completed_at = now
    payment.fees = fees
    payment.next_retry_at = None
    payment.error_message = None
    payment.error_code = None
    if gateway_transaction_id:
        payment.gateway_transaction_id = gateway_transaction_id
    return payment


def mark_failed(
    payment: Payment,
    *,
    now: datetime,
    reason: str,
    code: str | None = None,
) -> Payment:
    """pending|processing -> failed; counts the attempt and schedules a retry.

    When the attempt budget is spent next_retry_at is cleared and the
    payment stays failed.
    """
    _require(payment, PaymentStatus.FAILED, "fail")

    payment.status = PaymentStatus.FAILED
    payment.attempts += 1
    payment.failed_at = now
    payment.last_attempt_at = now
    payment.error_message = reason
    payment.error_code = code
    if payment.attempts < payment.max_attempts:
        payment.next_retry_at = now + retry_delay(payment.attempts)
    else:
        payment.next_retry_at = None
    return payment


def reenter_pending(payment: Payment, *, now: datetime) -> Payment:
    """failed -> pending for another attempt, with a fresh expiry window."""
    if payment.status != PaymentStatus.FAILED:
        raise InvalidTransitionError("payment", payment.status.value, "retry")
    if payment.attempts >= payment.max_attempts:
        raise InvalidTransitionError(
            "payment", payment.status.value, "retry",
            f"all {payment.max_attempts} attempts used",
        )

    payment.status = PaymentStatus.PENDING
    payment.next_retry_at = None
    payment.expires_at = now + PENDING_PAYMENT_TTL
    return payment


def cancel(payment: Payment, *, now: datetime) -> Payment:
    _require(payment, PaymentStatus.CANCELLED, "cancel")
    payment.status = PaymentStatus.CANCELLED
    payment.next_retry_at = None
    payment.error_message = "cancelled before capture"
    payment.failed_at = now
    return payment


def close_retries(payment: Payment, *, code: str) -> bool:
    """Make a failed payment terminal by spending its remaining attempts.

    Used once its booking has moved on: a newer intent replaced it, or the
    booking was cancelled. Returns False if it was already terminal.
    """
    if payment.status != PaymentStatus.FAILED:
        raise InvalidTransitionError("payment", payment.status.value, "close retries")
    if payment.attempts >= payment.max_attempts:
        return False
    payment.max_attempts = payment.attempts
    payment.next_retry_at = None
    payment.error_code = code
    return True


def mark_disputed(
    payment: Payment,
    *,
    now: datetime,
    dispute_id: str | None,
    reason: str | None,
) -> bool:
    """completed -> disputed. Returns False if already disputed."""
    if payment.status == PaymentStatus.DISPUTED:
        return False
    _require(payment, PaymentStatus.DISPUTED, "be disputed")
    payment.status = PaymentStatus.DISPUTED
    payment.dispute = DisputeDetails(dispute_id=dispute_id, reason=reason, opened_at=now)
    return True


# ── Refunds ───────────────────────────────────────────────


def refundable_amount(payment: Payment, requested: Decimal | None = None) -> Decimal:
    """Amount a refund would actually move: min(requested, remaining).

    Raises NotRefundableError when the payment is not completed or nothing
    is left to return.
    """
    if payment.status != PaymentStatus.COMPLETED:
        raise NotRefundableError(
            f"payment in status '{payment.status.value}' cannot be refunded"
        )
    remaining = payment.remaining_refundable
    if remaining <= 0:
        raise NotRefundableError("payment already fully refunded")
    if requested is None:
        return remaining
    if requested <= 0:
        raise ValidationError("refund amount must be positive")
    return fee_calc.quantize_money(min(requested, remaining))


def apply_refund(
    payment: Payment,
    *,
    amount: Decimal,
    reason: str,
    now: datetime,
    refund_id: str,
    gateway_refund_id: str | None = None,
) -> RefundRecord:
    """Append one refund record; full refund moves the payment to refunded.

    Partial refunds leave the status at completed.
    """
    if amount != refundable_amount(payment, amount):
        raise NotRefundableError("refund exceeds the remaining refundable amount")

    record = RefundRecord(
        refund_id=refund_id,
        amount=amount,
        reason=reason,
        refunded_at=now,
        gateway_refund_id=gateway_refund_id,
    )
    payment.refund_details.append(record)
    payment.refunded_amount = sum((r.amount for r in payment.refund_details), Decimal("0"))
    if payment.refunded_amount >= payment.amount:
        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = now
    return record


def is_fully_refunded(payment: Payment) -> bool:
    return payment.refunded_amount >= payment.amount


# ── Escrow ────────────────────────────────────────────────


def hold_in_escrow(
    payment: Payment,
    *,
    hold_period_hours: int,
    now: datetime,
    release_condition: str = DEFAULT_RELEASE_CONDITION,
) -> Payment:
    if payment.status != PaymentStatus.COMPLETED:
        raise InvalidTransitionError("payment", payment.status.value, "be held in escrow")
    if payment.escrow.is_escrowed:
        raise InvalidTransitionError(
            "payment", payment.status.value, "be held in escrow", "already escrowed"
        )
    if hold_period_hours <= 0:
        raise ValidationError("hold period must be positive")

    payment.escrow = EscrowDetails(
        is_escrowed=True,
        escrowed_at=now,
        hold_period_hours=hold_period_hours,
        release_condition=release_condition,
    )
    return payment


def release_from_escrow(payment: Payment, *, now: datetime) -> bool:
    """Release held funds to the payee. A second call is a no-op (False)."""
    if not payment.escrow.is_escrowed:
        raise InvalidTransitionError(
            "payment", payment.status.value, "be released from escrow", "not escrowed"
        )
    if payment.escrow.released_at is not None:
        return False
    payment.escrow.released_at = now
    return True


def _require(payment: Payment, target: PaymentStatus, operation: str) -> None:
    if not can_transition(payment.status, target):
        raise InvalidTransitionError("payment", payment.status.value, operation)
