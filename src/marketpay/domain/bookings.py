"""Booking lifecycle automaton.

Forward chain: pending -> confirmed -> in_progress -> completed, with
cancellation from any non-terminal state. disputed/refunded are recorded
side statuses and never re-enter the chain.

Every operation validates first and mutates second, so a rejected call
leaves the booking exactly as it was. The timeline is only ever appended.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from marketpay.domain import fees
from marketpay.domain.errors import (
    BookingExpiredError,
    InvalidTransitionError,
    ValidationError,
)
from marketpay.domain.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Cancellation,
    RefundStatus,
    RescheduleRequest,
    RescheduleStatus,
    TimelineEvent,
)
from marketpay.infra.time import combine_utc

PENDING_BOOKING_TTL = timedelta(hours=24)
MAX_ACCEPTED_RESCHEDULES = 3

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
    ),
    BookingStatus.IN_PROGRESS: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DISPUTED}
    ),
    BookingStatus.COMPLETED: frozenset({BookingStatus.DISPUTED, BookingStatus.REFUNDED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.DISPUTED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
}

PAYMENT_STATUS_TRANSITIONS: dict[BookingPaymentStatus, frozenset[BookingPaymentStatus]] = {
    BookingPaymentStatus.PENDING: frozenset(
        {BookingPaymentStatus.PAID, BookingPaymentStatus.PARTIAL, BookingPaymentStatus.FAILED}
    ),
    BookingPaymentStatus.PARTIAL: frozenset(
        {BookingPaymentStatus.PAID, BookingPaymentStatus.REFUNDED, BookingPaymentStatus.FAILED}
    ),
    BookingPaymentStatus.FAILED: frozenset(
        {BookingPaymentStatus.PENDING, BookingPaymentStatus.PAID}
    ),
    BookingPaymentStatus.PAID: frozenset(
        {BookingPaymentStatus.REFUNDED, BookingPaymentStatus.DISPUTED}
    ),
    BookingPaymentStatus.DISPUTED: frozenset(
        {BookingPaymentStatus.PAID, BookingPaymentStatus.REFUNDED}
    ),
    BookingPaymentStatus.REFUNDED: frozenset(),
}

RESCHEDULABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


# ── Creation ──────────────────────────────────────────────


def generate_booking_number(now: datetime) -> str:
    """SP + last 8 digits of the epoch millis + 4 random alphanumerics."""
    millis = str(int(now.timestamp() * 1000))[-8:]
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(4))
    return f"SP{millis}{suffix}"


def new_booking(
    *,
    service_id: str,
    provider_id: str,
    requester_id: str,
    scheduled_date: date,
    scheduled_time: time,
    estimated_duration_minutes: int,
    base_amount: Decimal,
    currency: str,
    now: datetime,
    location: dict[str, Any] | None = None,
    notes: str | None = None,
) -> Booking:
    """Build a pending booking with its price snapshot and first timeline entry."""
    if estimated_duration_minutes <= 0:
        raise ValidationError("estimated duration must be positive")
    if base_amount <= 0:
        raise ValidationError("service price must be positive")
    if combine_utc(scheduled_date, scheduled_time) <= now:
        raise ValidationError("scheduled time must be in the future")

    price = fees.price_booking(base_amount)
    booking = Booking(
        id=str(uuid.uuid4()),
        booking_number=generate_booking_number(now),
        service_id=service_id,
        provider_id=provider_id,
        requester_id=requester_id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        estimated_duration_minutes=estimated_duration_minutes,
        base_amount=price.base_amount,
        platform_fee=price.platform_fee,
        total_amount=price.total_amount,
        currency=currency.upper(),
        created_at=now,
        location=dict(location or {}),
        notes=notes,
        expires_at=now + PENDING_BOOKING_TTL,
    )
    _append(booking, "booking_created", now, "requester", "Booking request created")
    return booking


# ── Queries ───────────────────────────────────────────────


def service_start(booking: Booking) -> datetime:
    return combine_utc(booking.scheduled_date, booking.scheduled_time)


def service_window(booking: Booking) -> tuple[datetime, datetime]:
    start = service_start(booking)
    return start, start + timedelta(minutes=booking.estimated_duration_minutes)


def hours_until_service(booking: Booking, at: datetime) -> Decimal:
    seconds = Decimal(str((service_start(booking) - at).total_seconds()))
    return seconds / Decimal(3600)


def is_expired(booking: Booking, now: datetime) -> bool:
    """Pending booking past its expires_at (checked lazily, no sweeper)."""
    return (
        booking.status == BookingStatus.PENDING
        and booking.expires_at is not None
        and now > booking.expires_at
    )


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS[current]


def can_be_cancelled(booking: Booking, *, allow_in_progress: bool = True) -> bool:
    if booking.status == BookingStatus.IN_PROGRESS:
        return allow_in_progress
    return can_transition(booking.status, BookingStatus.CANCELLED)


def can_be_rescheduled(booking: Booking) -> bool:
    return (
        booking.status in RESCHEDULABLE_STATUSES
        and booking.reschedule_count < MAX_ACCEPTED_RESCHEDULES
    )


def has_pending_reschedule(booking: Booking) -> bool:
    return booking.reschedule is not None and booking.reschedule.status == RescheduleStatus.PENDING


# ── Forward chain ─────────────────────────────────────────


def confirm(
    booking: Booking,
    *,
    now: datetime,
    actor: str = "provider",
    enforce_expiry: bool = True,
) -> Booking:
    """pending -> confirmed. Clears expires_at.

    enforce_expiry=False is used when a captured payment confirms the
    booking: the requester committed while the booking was still open.
    """
    _require(booking, BookingStatus.CONFIRMED, "confirm")
    if enforce_expiry and is_expired(booking, now):
        raise BookingExpiredError("booking", booking.status.value, "confirm", "booking expired")

    booking.status = BookingStatus.CONFIRMED
    booking.confirmed_at = now
    booking.expires_at = None
    _append(booking, "booking_confirmed", now, actor, "Booking confirmed")
    return booking


def start(booking: Booking, *, now: datetime, actor: str = "provider") -> Booking:
    """confirmed -> in_progress. Stamps actual_start_time."""
    _require(booking, BookingStatus.IN_PROGRESS, "start")

    booking.status = BookingStatus.IN_PROGRESS
    booking.actual_start_time = now
    _append(booking, "service_started", now, actor, "Service started")
    return booking


def complete(booking: Booking, *, now: datetime, actor: str = "provider") -> Booking:
    """in_progress -> completed. Stamps actual_end_time."""
    _require(booking, BookingStatus.COMPLETED, "complete")

    booking.status = BookingStatus.COMPLETED
    booking.actual_end_time = now
    booking.completed_at = now
    _append(booking, "service_completed", now, actor, "Service completed")
    return booking


def cancel(
    booking: Booking,
    *,
    reason: str,
    cancelled_by: str,
    now: datetime,
    allow_in_progress: bool = True,
) -> Booking:
    """Cancel and record the refund owed. Moves no money.

    The refund is the booking total times the time-to-service tier at the
    cancellation instant. refund_status is pending only when something was
    paid and something is owed.
    """
    if not reason or not reason.strip():
        raise ValidationError("cancellation reason is required")
    _require(booking, BookingStatus.CANCELLED, "cancel")
    if booking.status == BookingStatus.IN_PROGRESS and not allow_in_progress:
        raise InvalidTransitionError(
            "booking", booking.status.value, "cancel", "cancellation not allowed once in progress"
        )

    hours = hours_until_service(booking, now)
    owed = fees.quantize_money(fees.refund_amount(booking.total_amount, hours))
    paid = booking.payment_status == BookingPaymentStatus.PAID
    refund_status = RefundStatus.PENDING if paid and owed > 0 else RefundStatus.NOT_REQUIRED

    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = now
    booking.expires_at = None
    booking.cancellation = Cancellation(
        cancelled_by=cancelled_by,
        reason=reason,
        cancelled_at=now,
        refund_amount=owed,
        refund_status=refund_status,
        hours_until_service=hours.quantize(Decimal("0.01")),
    )
    _append(
        booking,
        "booking_cancelled",
        now,
        cancelled_by,
        f"Booking cancelled by {cancelled_by}: {reason}",
    )
    return booking


# ── Side statuses ─────────────────────────────────────────


def mark_disputed(booking: Booking, *, now: datetime, reason: str | None = None) -> bool:
    """Record a payment dispute on the booking.

    Returns False (no change) when the booking status has no disputed
    edge, e.g. a cancelled booking; the payment status still records it.
    """
    if not can_transition(booking.status, BookingStatus.DISPUTED):
        return False
    booking.status = BookingStatus.DISPUTED
    _append(booking, "booking_disputed", now, "system", f"Payment disputed: {reason or 'unspecified'}")
    return True


def mark_refunded(booking: Booking, *, now: datetime) -> bool:
    """completed -> refunded once the payment is fully returned."""
    if not can_transition(booking.status, BookingStatus.REFUNDED):
        return False
    booking.status = BookingStatus.REFUNDED
    _append(booking, "booking_refunded", now, "system", "Booking fully refunded")
    return True


def set_payment_status(
    booking: Booking,
    status: BookingPaymentStatus,
    *,
    now: datetime,
    description: str | None = None,
) -> bool:
    """Move the booking's own payment_status mirror.

    Setting the current value again is a no-op (returns False), which keeps
    replayed payment events from duplicating timeline entries.
    """
    if booking.payment_status == status:
        return False
    if status not in PAYMENT_STATUS_TRANSITIONS[booking.payment_status]:
        raise InvalidTransitionError(
            "booking payment", booking.payment_status.value, f"move to '{status.value}'"
        )
    booking.payment_status = status
    _append(
        booking,
        "payment_updated",
        now,
        "system",
        description or f"Payment status updated to {status.value}",
    )
    return True


def record_refund_outcome(
    booking: Booking, *, processed: bool, now: datetime, detail: str | None = None
) -> None:
    """Close out the refund owed by a cancellation."""
    if booking.cancellation is None or booking.cancellation.refund_status != RefundStatus.PENDING:
        raise InvalidTransitionError("booking", booking.status.value, "record refund outcome",
                                     "no refund pending")
    booking.cancellation.refund_status = RefundStatus.PROCESSED if processed else RefundStatus.FAILED
    event = "refund_processed" if processed else "refund_failed"
    _append(booking, event, now, "system", detail or event.replace("_", " ").capitalize())


# ── Reschedule sub-workflow ───────────────────────────────


def request_reschedule(
    booking: Booking,
    *,
    requested_date: date,
    requested_time: time,
    reason: str,
    requested_by: str,
    now: datetime,
) -> Booking:
    """Open a reschedule request. At most one may be pending."""
    if booking.status not in RESCHEDULABLE_STATUSES:
        raise InvalidTransitionError("booking", booking.status.value, "be rescheduled")
    if has_pending_reschedule(booking):
        raise InvalidTransitionError(
            "booking", booking.status.value, "request reschedule", "a request is already pending"
        )
    if booking.reschedule_count >= MAX_ACCEPTED_RESCHEDULES:
        raise InvalidTransitionError(
            "booking", booking.status.value, "request reschedule",
            f"limit of {MAX_ACCEPTED_RESCHEDULES} reschedules reached",
        )
    if combine_utc(requested_date, requested_time) <= now:
        raise ValidationError("new scheduled time must be in the future")

    booking.reschedule = RescheduleRequest(
        requested_by=requested_by,
        requested_date=requested_date,
        requested_time=requested_time,
        reason=reason,
        requested_at=now,
    )
    _append(booking, "reschedule_requested", now, requested_by,
            f"Reschedule requested by {requested_by}")
    return booking


def approve_reschedule(booking: Booking, *, now: datetime, actor: str = "provider") -> Booking:
    """Apply the pending request: move the schedule and count it."""
    _require_pending_reschedule(booking, "approve reschedule")
    if booking.status not in RESCHEDULABLE_STATUSES:
        raise InvalidTransitionError("booking", booking.status.value, "approve reschedule")

    request = booking.reschedule
    previous = f"{booking.scheduled_date.isoformat()} {booking.scheduled_time.isoformat()}"
    booking.scheduled_date = request.requested_date
    booking.scheduled_time = request.requested_time
    booking.reschedule_count += 1
    request.status = RescheduleStatus.APPROVED
    request.responded_at = now
    _append(
        booking,
        "reschedule_approved",
        now,
        actor,
        f"Rescheduled from {previous} to "
        f"{request.requested_date.isoformat()} {request.requested_time.isoformat()}",
    )
    return booking


def reject_reschedule(
    booking: Booking, *, reason: str, now: datetime, actor: str = "provider"
) -> Booking:
    _require_pending_reschedule(booking, "reject reschedule")

    booking.reschedule.status = RescheduleStatus.REJECTED
    booking.reschedule.responded_at = now
    booking.reschedule.rejection_reason = reason
    _append(booking, "reschedule_rejected", now, actor, f"Reschedule request rejected: {reason}")
    return booking


# ── Internals ─────────────────────────────────────────────


def _require(booking: Booking, target: BookingStatus, operation: str) -> None:
    if not can_transition(booking.status, target):
        raise InvalidTransitionError("booking", booking.status.value, operation)


def _require_pending_reschedule(booking: Booking, operation: str) -> None:
    if not has_pending_reschedule(booking):
        raise InvalidTransitionError(
            "booking", booking.status.value, operation, "no pending reschedule request"
        )


def _append(booking: Booking, event: str, now: datetime, actor: str, description: str) -> None:
    booking.timeline.append(
        TimelineEvent(event=event, timestamp=now, actor=actor, description=description)
    )
