"""JSON views of bookings and payments returned by the API.

Money is rendered as strings to keep Decimal precision on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from marketpay.domain import payments as payment_machine
from marketpay.domain.models import Booking, Payment


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def booking_view(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "booking_number": booking.booking_number,
        "service_id": booking.service_id,
        "provider_id": booking.provider_id,
        "requester_id": booking.requester_id,
        "scheduled_date": booking.scheduled_date.isoformat(),
        "scheduled_time": booking.scheduled_time.isoformat(),
        "estimated_duration_minutes": booking.estimated_duration_minutes,
        "base_amount": str(booking.base_amount),
        "platform_fee": str(booking.platform_fee),
        "total_amount": str(booking.total_amount),
        "currency": booking.currency,
        "status": booking.status.value,
        "payment_status": booking.payment_status.value,
        "location": booking.location,
        "notes": booking.notes,
        "reschedule": booking.reschedule.to_json() if booking.reschedule else None,
        "reschedule_count": booking.reschedule_count,
        "cancellation": booking.cancellation.to_json() if booking.cancellation else None,
        "expires_at": _iso(booking.expires_at),
        "actual_start_time": _iso(booking.actual_start_time),
        "actual_end_time": _iso(booking.actual_end_time),
        "created_at": _iso(booking.created_at),
        "timeline": [
            {
                "event": e.event,
                "timestamp": e.timestamp.isoformat(),
                "actor": e.actor,
                "description": e.description,
            }
            for e in booking.timeline
        ],
    }


def payment_view(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "transaction_id": payment.transaction_id,
        "booking_id": payment.booking_id,
        "payer_id": payment.payer_id,
        "payee_id": payment.payee_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "exchange_rate": str(payment.exchange_rate),
        "amount_in_base_currency": str(payment.amount_in_base_currency),
        "payment_method": payment.payment_method.value,
        "gateway": payment.gateway.value,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "status": payment.status.value,
        "fees": payment.fees.to_json() if payment.fees else None,
        "net_amount": str(payment_machine.net_amount(payment)),
        "refunded_amount": str(payment.refunded_amount),
        "refund_details": [
            {
                "refund_id": r.refund_id,
                "amount": str(r.amount),
                "reason": r.reason,
                "refunded_at": r.refunded_at.isoformat(),
            }
            for r in payment.refund_details
        ],
        "escrow": payment.escrow.to_json(),
        "dispute": payment.dispute.to_json() if payment.dispute else None,
        "attempts": payment.attempts,
        "max_attempts": payment.max_attempts,
        "next_retry_at": _iso(payment.next_retry_at),
        "expires_at": _iso(payment.expires_at),
        "completed_at": _iso(payment.completed_at),
        "error_message": payment.error_message,
        "created_at": _iso(payment.created_at),
    }
