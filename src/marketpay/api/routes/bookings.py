"""Booking endpoints: create, read, status changes, reschedules."""

from __future__ import annotations

from datetime import date, time
from typing import Any

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field

from marketpay.api.actor import get_actor
from marketpay.api.errors import http_error
from marketpay.api.views import booking_view
from marketpay.domain.errors import MarketpayError
from marketpay.domain.models import Actor, BookingStatus
from marketpay.gateways.registry import GatewayRegistry
from marketpay.infra.catalog import PostgresServiceCatalog, ServiceCatalog
from marketpay.services import booking_service
from marketpay.services.notifications import Notifier, build_notifier

router = APIRouter(prefix="/bookings", tags=["bookings"])

# Module-level collaborators (lazy init, can be overridden for tests)
_catalog: ServiceCatalog | None = None
_gateway_registry: GatewayRegistry | None = None
_notifier: Notifier | None = None


def _get_catalog() -> ServiceCatalog:
    global _catalog
    if _catalog is None:
        _catalog = PostgresServiceCatalog()
    return _catalog


def _get_gateway_registry() -> GatewayRegistry:
    global _gateway_registry
    if _gateway_registry is None:
        _gateway_registry = GatewayRegistry()
    return _gateway_registry


def _get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


# ── Request models ────────────────────────────────────────


class CreateBookingRequest(BaseModel):
    service_id: str = Field(..., min_length=1)
    scheduled_date: date
    scheduled_time: time
    location: dict[str, Any] | None = None
    notes: str | None = Field(None, max_length=2000)


class UpdateStatusRequest(BaseModel):
    status: BookingStatus
    reason: str | None = Field(None, max_length=1000)
    notes: str | None = Field(None, max_length=1000)


class RescheduleRequestBody(BaseModel):
    scheduled_date: date
    scheduled_time: time
    reason: str = Field(..., min_length=1, max_length=1000)


class RejectRescheduleRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


# ── Endpoints ─────────────────────────────────────────────


@router.post("", status_code=201)
def create_booking(
    body: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
) -> dict:
    """Request a booking for a catalog service as the calling requester."""
    try:
        booking = booking_service.create_booking(
            service_id=body.service_id,
            requester_id=actor.id,
            scheduled_date=body.scheduled_date,
            scheduled_time=body.scheduled_time,
            location=body.location,
            notes=body.notes,
            catalog=_get_catalog(),
            notifier=_get_notifier(),
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)


@router.get("/{booking_id}")
def get_booking(
    booking_id: str = Path(..., description="Booking UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        booking = booking_service.get_booking(booking_id, actor=actor)
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)


@router.post("/{booking_id}/status")
def update_booking_status(
    body: UpdateStatusRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    """Confirm, start, complete or cancel a booking.

    Cancellation needs a reason (``reason`` or ``notes``).
    """
    try:
        booking = booking_service.update_booking_status(
            booking_id,
            target_status=body.status,
            actor=actor,
            reason=body.reason or body.notes,
            catalog=_get_catalog(),
            gateways=_get_gateway_registry(),
            notifier=_get_notifier(),
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)


@router.post("/{booking_id}/reschedule")
def request_reschedule(
    body: RescheduleRequestBody,
    booking_id: str = Path(..., description="Booking UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        booking = booking_service.request_reschedule(
            booking_id,
            actor=actor,
            requested_date=body.scheduled_date,
            requested_time=body.scheduled_time,
            reason=body.reason,
            notifier=_get_notifier(),
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)


@router.post("/{booking_id}/reschedule/approve")
def approve_reschedule(
    booking_id: str = Path(..., description="Booking UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        booking = booking_service.approve_reschedule(
            booking_id, actor=actor, notifier=_get_notifier()
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)


@router.post("/{booking_id}/reschedule/reject")
def reject_reschedule(
    body: RejectRescheduleRequest,
    booking_id: str = Path(..., description="Booking UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        booking = booking_service.reject_reschedule(
            booking_id, actor=actor, reason=body.reason, notifier=_get_notifier()
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return booking_view(booking)
