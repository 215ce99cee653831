"""Bookings repository - persistence for bookings and their timeline.

Uses raw SQL with psycopg2 (no ORM). Timeline rows are insert-only and
keyed by (booking_id, seq); saving a booking only ever adds new entries.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from marketpay.domain.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    Cancellation,
    RescheduleRequest,
    TimelineEvent,
)

_BOOKING_COLUMNS = """
    id, booking_number, service_id, provider_id, requester_id,
    scheduled_date, scheduled_time, estimated_duration_minutes,
    base_amount, platform_fee, total_amount, currency, created_at,
    status, payment_status, location, notes, reschedule, reschedule_count,
    cancellation, expires_at, actual_start_time, actual_end_time,
    confirmed_at, completed_at, cancelled_at
"""


def insert_booking(cur: PgCursor, booking: Booking) -> None:
    """Insert a new booking row and its initial timeline."""
    cur.execute(
        """
        INSERT INTO bookings (
            id, booking_number, service_id, provider_id, requester_id,
            scheduled_date, scheduled_time, estimated_duration_minutes,
            base_amount, platform_fee, total_amount, currency, created_at,
            status, payment_status, location, notes, reschedule_count, expires_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s::jsonb, %s, %s, %s)
        """,
        (
            booking.id,
            booking.booking_number,
            booking.service_id,
            booking.provider_id,
            booking.requester_id,
            booking.scheduled_date,
            booking.scheduled_time,
            booking.estimated_duration_minutes,
            booking.base_amount,
            booking.platform_fee,
            booking.total_amount,
            booking.currency,
            booking.created_at,
            booking.status.value,
            booking.payment_status.value,
            json.dumps(booking.location),
            booking.notes,
            booking.reschedule_count,
            booking.expires_at,
        ),
    )
    _append_timeline(cur, booking)


def get_booking(
    cur: PgCursor,
    booking_id: str,
    *,
    for_update: bool = False,
) -> Booking | None:
    """Fetch a booking with its timeline.

    Args:
        cur: Database cursor.
        booking_id: Booking UUID.
        for_update: Lock the row until the transaction ends.

    Returns:
        Booking or None if not found (soft-deleted rows are invisible).
    """
    query = f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE id = %s AND deleted_at IS NULL"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (booking_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_booking(row, _load_timeline(cur, booking_id))


def save_booking(cur: PgCursor, booking: Booking) -> None:
    """Persist mutable booking fields and append new timeline entries."""
    cur.execute(
        """
        UPDATE bookings
        SET status = %s,
            payment_status = %s,
            scheduled_date = %s,
            scheduled_time = %s,
            reschedule = %s::jsonb,
            reschedule_count = %s,
            cancellation = %s::jsonb,
            expires_at = %s,
            actual_start_time = %s,
            actual_end_time = %s,
            confirmed_at = %s,
            completed_at = %s,
            cancelled_at = %s,
            notes = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            booking.status.value,
            booking.payment_status.value,
            booking.scheduled_date,
            booking.scheduled_time,
            json.dumps(booking.reschedule.to_json()) if booking.reschedule else None,
            booking.reschedule_count,
            json.dumps(booking.cancellation.to_json()) if booking.cancellation else None,
            booking.expires_at,
            booking.actual_start_time,
            booking.actual_end_time,
            booking.confirmed_at,
            booking.completed_at,
            booking.cancelled_at,
            booking.notes,
            booking.id,
        ),
    )
    _append_timeline(cur, booking)


def find_conflicting_booking(
    cur: PgCursor,
    *,
    provider_id: str,
    starts_at: datetime,
    ends_at: datetime,
    exclude_booking_id: str | None = None,
) -> str | None:
    """Return the id of a confirmed/in-progress booking overlapping the slot.

    Overlap is half-open: a booking ending exactly when the new one starts
    does not conflict.
    """
    cur.execute(
        """
        SELECT id
        FROM bookings
        WHERE provider_id = %s
          AND status IN ('confirmed', 'in_progress')
          AND deleted_at IS NULL
          AND (%s::uuid IS NULL OR id <> %s::uuid)
          AND (scheduled_date + scheduled_time) AT TIME ZONE 'UTC' < %s
          AND (scheduled_date + scheduled_time) AT TIME ZONE 'UTC'
              + make_interval(mins => estimated_duration_minutes) > %s
        LIMIT 1
        """,
        (provider_id, exclude_booking_id, exclude_booking_id, ends_at, starts_at),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def _append_timeline(cur: PgCursor, booking: Booking) -> None:
    for seq, entry in enumerate(booking.timeline):
        cur.execute(
            """
            INSERT INTO booking_timeline (
                booking_id, seq, event, occurred_at, actor, description
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (booking_id, seq) DO NOTHING
            """,
            (booking.id, seq, entry.event, entry.timestamp, entry.actor, entry.description),
        )


def _load_timeline(cur: PgCursor, booking_id: str) -> list[TimelineEvent]:
    cur.execute(
        """
        SELECT event, occurred_at, actor, description
        FROM booking_timeline
        WHERE booking_id = %s
        ORDER BY seq
        """,
        (booking_id,),
    )
    return [
        TimelineEvent(event=r[0], timestamp=r[1], actor=r[2], description=r[3])
        for r in cur.fetchall()
    ]


def _row_to_booking(row: tuple[Any, ...], timeline: list[TimelineEvent]) -> Booking:
    return Booking(
        id=str(row[0]),
        booking_number=row[1],
        service_id=str(row[2]),
        provider_id=row[3],
        requester_id=row[4],
        scheduled_date=row[5],
        scheduled_time=row[6],
        estimated_duration_minutes=row[7],
        base_amount=row[8],
        platform_fee=row[9],
        total_amount=row[10],
        currency=row[11],
        created_at=row[12],
        status=BookingStatus(row[13]),
        payment_status=BookingPaymentStatus(row[14]),
        location=row[15] or {},
        notes=row[16],
        reschedule=RescheduleRequest.from_json(row[17]) if row[17] else None,
        reschedule_count=row[18],
        cancellation=Cancellation.from_json(row[19]) if row[19] else None,
        expires_at=row[20],
        actual_start_time=row[21],
        actual_end_time=row[22],
        confirmed_at=row[23],
        completed_at=row[24],
        cancelled_at=row[25],
        timeline=timeline,
    )
