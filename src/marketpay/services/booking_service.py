"""Booking orchestration: creation, status changes, reschedules.

Each operation runs one short transaction around the booking automaton;
notifications and catalog updates happen after commit and are best
effort. Cancelling a paid booking hands the refund to payment_service
once the cancellation itself is durable.
"""

from __future__ import annotations

import os
from datetime import date, time
from typing import Any

from marketpay.domain import bookings, payments
from marketpay.domain.errors import (
    AuthorizationError,
    ConflictError,
    MarketpayError,
    NotFoundError,
    ValidationError,
)
from marketpay.domain.models import (
    SYSTEM_ACTOR,
    Actor,
    Booking,
    BookingStatus,
    PaymentStatus,
    RefundStatus,
)
from marketpay.gateways.registry import GatewayRegistry
from marketpay.infra.catalog import ServiceCatalog
from marketpay.infra.db import advisory_xact_lock, txn
from marketpay.infra.repositories import bookings_repository, payments_repository
from marketpay.infra.time import utc_now
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context
from marketpay.services import payment_service
from marketpay.services.notifications import Notifier, notify_safely

logger = get_logger(__name__)

# Statuses a caller may request through update_booking_status
_PROVIDER_TARGETS = {
    BookingStatus.CONFIRMED: "booking_confirmed",
    BookingStatus.IN_PROGRESS: "booking_started",
    BookingStatus.COMPLETED: "booking_completed",
}


def _allow_in_progress_cancel() -> bool:
    value = os.environ.get("BOOKING_ALLOW_IN_PROGRESS_CANCEL", "true")
    return value.strip().lower() in ("1", "true", "yes", "on")


# ── Creation ──────────────────────────────────────────────


def create_booking(
    *,
    service_id: str,
    requester_id: str,
    scheduled_date: date,
    scheduled_time: time,
    catalog: ServiceCatalog,
    notifier: Notifier | None = None,
    location: dict[str, Any] | None = None,
    notes: str | None = None,
) -> Booking:
    """Create a pending booking priced from the catalog.

    This function:
    1. Reads the authoritative price/duration for the service
    2. Builds the booking (validates schedule, snapshots money, sets expiry)
    3. Serializes on the provider and rejects an overlapping active booking
    4. Inserts the booking and its first timeline entry

    Raises:
        NotFoundError: Service does not exist.
        ValidationError: Inactive service, self-booking, or past schedule.
        ConflictError: Provider already booked for that slot.
    """
    listing = catalog.get_service(service_id)
    if listing is None:
        raise NotFoundError(f"service {service_id} not found")
    if not listing.is_active:
        raise ValidationError("service is not available for booking")
    if listing.provider_id == requester_id:
        raise ValidationError("providers cannot book their own service")

    booking = bookings.new_booking(
        service_id=listing.id,
        provider_id=listing.provider_id,
        requester_id=requester_id,
        scheduled_date=scheduled_date,
        scheduled_time=scheduled_time,
        estimated_duration_minutes=listing.duration_minutes,
        base_amount=listing.price,
        currency=listing.currency,
        now=utc_now(),
        location=location,
        notes=notes,
    )

    with txn() as cur:
        advisory_xact_lock(cur, f"provider-schedule:{booking.provider_id}")
        _ensure_slot_free(cur, booking)
        bookings_repository.insert_booking(cur, booking)

    logger.info(
        "booking_created",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                service_id=service_id,
                total_amount=booking.total_amount,
                correlationId=get_correlation_id(),
            )
        },
    )
    notify_safely(notifier, "booking_requested", booking.provider_id, _booking_payload(booking))
    return booking


def get_booking(booking_id: str, *, actor: Actor) -> Booking:
    with txn() as cur:
        booking = bookings_repository.get_booking(cur, booking_id)
    if booking is None:
        raise NotFoundError(f"booking {booking_id} not found")
    _require_party(booking, actor)
    return booking


# ── Status changes ────────────────────────────────────────


def update_booking_status(
    booking_id: str,
    *,
    target_status: BookingStatus,
    actor: Actor,
    catalog: ServiceCatalog,
    gateways: GatewayRegistry,
    notifier: Notifier | None = None,
    reason: str | None = None,
) -> Booking:
    """Move a booking along its lifecycle on behalf of a caller.

    Provider (or admin) confirms, starts and completes; either party (or
    admin) cancels. disputed/refunded are set by payment events only.

    Raises:
        InvalidTransitionError: Target not reachable from the current status.
        AuthorizationError: Caller may not perform this change.
    """
    if target_status == BookingStatus.CANCELLED:
        return _cancel(
            booking_id, actor=actor, reason=reason, gateways=gateways, notifier=notifier
        )
    if target_status not in _PROVIDER_TARGETS:
        raise ValidationError(f"status '{target_status.value}' cannot be set directly")

    now = utc_now()
    released = None
    with txn() as cur:
        booking = _load(cur, booking_id)
        if not actor.is_privileged and actor.id != booking.provider_id:
            raise AuthorizationError("only the provider can change this status")
        role = _party_role(booking, actor)

        if target_status == BookingStatus.CONFIRMED:
            bookings.confirm(booking, now=now, actor=role)
        elif target_status == BookingStatus.IN_PROGRESS:
            bookings.start(booking, now=now, actor=role)
        else:
            bookings.complete(booking, now=now, actor=role)
            released = payment_service.release_escrow_for_booking(cur, booking, now=now)

        bookings_repository.save_booking(cur, booking)

    event = _PROVIDER_TARGETS[target_status]
    logger.info(
        event,
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                actor_role=role,
                correlationId=get_correlation_id(),
            )
        },
    )

    if target_status == BookingStatus.COMPLETED:
        _record_completion(catalog, booking)
        if released is not None:
            notify_safely(notifier, "escrow_released", released.payee_id, {
                "payment_id": released.id,
                "booking_id": booking.id,
            })
    notify_safely(notifier, event, booking.requester_id, _booking_payload(booking))
    return booking


def _cancel(
    booking_id: str,
    *,
    actor: Actor,
    reason: str | None,
    gateways: GatewayRegistry,
    notifier: Notifier | None,
) -> Booking:
    """Cancel, then settle the owed refund through the payment automaton.

    This function:
    1. Locks the booking, records the cancellation and refund owed
    2. Cancels a still-pending payment and stops retries of failed ones,
       in the same transaction (refused while a payment is processing)
    3. After commit, executes the owed refund against the completed payment
    4. Records refund_status processed/failed on the booking
    """
    now = utc_now()
    refund_payment_id = None
    with txn() as cur:
        booking = _load(cur, booking_id)
        _require_party(booking, actor)
        role = _party_role(booking, actor)

        active = payments_repository.find_active_payment(cur, booking_id, for_update=True)
        if active is not None and active.status == PaymentStatus.PROCESSING:
            # the refund owed depends on whether this capture lands
            raise ConflictError("a payment for this booking is being verified; retry once it settles")

        bookings.cancel(
            booking,
            reason=reason or "",
            cancelled_by=role,
            now=now,
            allow_in_progress=_allow_in_progress_cancel(),
        )

        for retryable in payments_repository.find_retryable_payments(cur, booking_id, for_update=True):
            payments.close_retries(retryable, code="booking_cancelled")
            payments_repository.save_payment(cur, retryable)

        if active is not None and active.status == PaymentStatus.PENDING:
            payments.cancel(active, now=now)
            payments_repository.save_payment(cur, active)
        elif (
            active is not None
            and active.status == PaymentStatus.COMPLETED
            and booking.cancellation.refund_status == RefundStatus.PENDING
        ):
            refund_payment_id = active.id

        bookings_repository.save_booking(cur, booking)

    logger.info(
        "booking_cancelled",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                cancelled_by=role,
                refund_amount=booking.cancellation.refund_amount,
                refund_status=booking.cancellation.refund_status,
                correlationId=get_correlation_id(),
            )
        },
    )

    if refund_payment_id is not None:
        booking = _settle_cancellation_refund(
            booking, refund_payment_id, gateways=gateways, notifier=notifier
        )

    counterparty = booking.provider_id if actor.id == booking.requester_id else booking.requester_id
    notify_safely(notifier, "booking_cancelled", counterparty, _booking_payload(booking))
    return booking


def _settle_cancellation_refund(
    booking: Booking,
    payment_id: str,
    *,
    gateways: GatewayRegistry,
    notifier: Notifier | None,
) -> Booking:
    try:
        payment_service.refund_payment(
            payment_id,
            actor=SYSTEM_ACTOR,
            reason=f"Booking cancelled: {booking.cancellation.reason}",
            amount=booking.cancellation.refund_amount,
            gateways=gateways,
            notifier=notifier,
        )
    except MarketpayError as e:
        logger.exception(
            "cancellation refund failed",
            extra={
                "extra_fields": safe_log_context(
                    booking_id=booking.id,
                    payment_id=payment_id,
                    error_type=type(e).__name__,
                    correlationId=get_correlation_id(),
                )
            },
        )
        with txn() as cur:
            booking = _load(cur, booking.id)
            if booking.cancellation and booking.cancellation.refund_status == RefundStatus.PENDING:
                bookings.record_refund_outcome(
                    booking, processed=False, now=utc_now(), detail=f"Refund failed: {e}"
                )
                bookings_repository.save_booking(cur, booking)
        return booking

    with txn() as cur:
        return _load(cur, booking.id, for_update=False)


# ── Reschedule ────────────────────────────────────────────


def request_reschedule(
    booking_id: str,
    *,
    actor: Actor,
    requested_date: date,
    requested_time: time,
    reason: str,
    notifier: Notifier | None = None,
) -> Booking:
    now = utc_now()
    with txn() as cur:
        booking = _load(cur, booking_id)
        _require_party(booking, actor)
        bookings.request_reschedule(
            booking,
            requested_date=requested_date,
            requested_time=requested_time,
            reason=reason,
            requested_by=_party_role(booking, actor),
            now=now,
        )
        bookings_repository.save_booking(cur, booking)

    logger.info(
        "reschedule_requested",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, correlationId=get_correlation_id())},
    )
    counterparty = booking.provider_id if actor.id == booking.requester_id else booking.requester_id
    notify_safely(notifier, "reschedule_requested", counterparty, _booking_payload(booking))
    return booking


def approve_reschedule(
    booking_id: str,
    *,
    actor: Actor,
    notifier: Notifier | None = None,
) -> Booking:
    """Apply the pending request after re-checking the provider's calendar."""
    now = utc_now()
    with txn() as cur:
        booking = _load(cur, booking_id)
        _require_responder(booking, actor)
        role = _party_role(booking, actor)
        bookings.approve_reschedule(booking, now=now, actor=role)
        advisory_xact_lock(cur, f"provider-schedule:{booking.provider_id}")
        _ensure_slot_free(cur, booking)
        bookings_repository.save_booking(cur, booking)

    logger.info(
        "reschedule_approved",
        extra={
            "extra_fields": safe_log_context(
                booking_id=booking.id,
                reschedule_count=booking.reschedule_count,
                correlationId=get_correlation_id(),
            )
        },
    )
    notify_safely(notifier, "reschedule_approved", _requested_by_id(booking), _booking_payload(booking))
    return booking


def reject_reschedule(
    booking_id: str,
    *,
    actor: Actor,
    reason: str,
    notifier: Notifier | None = None,
) -> Booking:
    now = utc_now()
    with txn() as cur:
        booking = _load(cur, booking_id)
        _require_responder(booking, actor)
        bookings.reject_reschedule(booking, reason=reason, now=now, actor=_party_role(booking, actor))
        bookings_repository.save_booking(cur, booking)

    logger.info(
        "reschedule_rejected",
        extra={"extra_fields": safe_log_context(booking_id=booking.id, correlationId=get_correlation_id())},
    )
    notify_safely(notifier, "reschedule_rejected", _requested_by_id(booking), _booking_payload(booking))
    return booking


# ── Internals ─────────────────────────────────────────────


def _load(cur, booking_id: str, *, for_update: bool = True) -> Booking:
    booking = bookings_repository.get_booking(cur, booking_id, for_update=for_update)
    if booking is None:
        raise NotFoundError(f"booking {booking_id} not found")
    return booking


def _ensure_slot_free(cur, booking: Booking) -> None:
    starts_at, ends_at = bookings.service_window(booking)
    conflict = bookings_repository.find_conflicting_booking(
        cur,
        provider_id=booking.provider_id,
        starts_at=starts_at,
        ends_at=ends_at,
        exclude_booking_id=booking.id,
    )
    if conflict is not None:
        raise ConflictError("provider already has a booking in this time slot")


def _record_completion(catalog: ServiceCatalog, booking: Booking) -> None:
    try:
        catalog.record_completed_booking(booking.service_id)
    except Exception:
        logger.exception(
            "catalog completed-booking update failed",
            extra={"extra_fields": safe_log_context(service_id=booking.service_id)},
        )


def _party_role(booking: Booking, actor: Actor) -> str:
    if actor.id == booking.provider_id:
        return "provider"
    if actor.id == booking.requester_id:
        return "requester"
    return actor.role.value


def _require_party(booking: Booking, actor: Actor) -> None:
    if actor.is_privileged:
        return
    if actor.id not in (booking.provider_id, booking.requester_id):
        raise AuthorizationError("not a party to this booking")


def _require_responder(booking: Booking, actor: Actor) -> None:
    """The party that did not ask for the reschedule answers it."""
    _require_party(booking, actor)
    if actor.is_privileged or booking.reschedule is None:
        return
    if _party_role(booking, actor) == booking.reschedule.requested_by:
        raise AuthorizationError("a reschedule must be answered by the other party")


def _requested_by_id(booking: Booking) -> str:
    if booking.reschedule and booking.reschedule.requested_by == "provider":
        return booking.provider_id
    return booking.requester_id


def _booking_payload(booking: Booking) -> dict[str, Any]:
    return {
        "booking_id": booking.id,
        "booking_number": booking.booking_number,
        "status": booking.status.value,
        "scheduled_date": booking.scheduled_date.isoformat(),
        "scheduled_time": booking.scheduled_time.isoformat(),
    }
