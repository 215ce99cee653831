"""Payments repository - persistence for payment records and refunds.

Uses raw SQL with psycopg2 (no ORM). The partial unique index
uq_payments_active_booking backs the one-active-payment-per-booking rule;
insert_payment relies on it rather than on a prior SELECT.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from marketpay.domain.models import (
    DisputeDetails,
    EscrowDetails,
    Fees,
    Gateway,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
)

_PAYMENT_COLUMNS = """
    id, transaction_id, booking_id, payer_id, payee_id, amount, currency,
    payment_method, gateway, created_at, expires_at, exchange_rate,
    amount_in_base_currency, gateway_transaction_id, gateway_reference,
    status, fees, refunded_amount, escrow, dispute, attempts, max_attempts,
    next_retry_at, last_attempt_at, processed_at, completed_at, failed_at,
    refunded_at, error_message, error_code
"""


def insert_payment(cur: PgCursor, payment: Payment) -> bool:
    """Insert a payment unless the booking already has an active one.

    Returns:
        True if inserted, False if the active-payment index rejected it.
    """
    cur.execute(
        """
        INSERT INTO payments (
            id, transaction_id, booking_id, payer_id, payee_id, amount, currency,
            payment_method, gateway, created_at, expires_at, exchange_rate,
            amount_in_base_currency, gateway_transaction_id, gateway_reference,
            status, attempts, max_attempts, escrow
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s::jsonb)
        ON CONFLICT (booking_id)
            WHERE status IN ('pending', 'processing', 'completed') AND deleted_at IS NULL
            DO NOTHING
        RETURNING id
        """,
        (
            payment.id,
            payment.transaction_id,
            payment.booking_id,
            payment.payer_id,
            payment.payee_id,
            payment.amount,
            payment.currency,
            payment.payment_method.value,
            payment.gateway.value,
            payment.created_at,
            payment.expires_at,
            payment.exchange_rate,
            payment.amount_in_base_currency,
            payment.gateway_transaction_id,
            payment.gateway_reference,
            payment.status.value,
            payment.attempts,
            payment.max_attempts,
            json.dumps(payment.escrow.to_json()),
        ),
    )
    return cur.fetchone() is not None


def get_payment(
    cur: PgCursor,
    payment_id: str,
    *,
    for_update: bool = False,
) -> Payment | None:
    query = f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = %s AND deleted_at IS NULL"
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (payment_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_payment(row, _load_refunds(cur, str(row[0])))


def get_payment_by_gateway_transaction(
    cur: PgCursor,
    *,
    gateway: str,
    gateway_transaction_id: str,
    for_update: bool = False,
) -> Payment | None:
    """Resolve a webhook's transaction id to our payment."""
    query = f"""
        SELECT {_PAYMENT_COLUMNS}
        FROM payments
        WHERE gateway = %s AND gateway_transaction_id = %s AND deleted_at IS NULL
    """
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (gateway, gateway_transaction_id))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_payment(row, _load_refunds(cur, str(row[0])))


def find_active_payment(
    cur: PgCursor,
    booking_id: str,
    *,
    for_update: bool = False,
) -> Payment | None:
    """The booking's pending/processing/completed payment, if any."""
    query = f"""
        SELECT {_PAYMENT_COLUMNS}
        FROM payments
        WHERE booking_id = %s
          AND status IN ('pending', 'processing', 'completed')
          AND deleted_at IS NULL
    """
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (booking_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_payment(row, _load_refunds(cur, str(row[0])))


def find_latest_payment(cur: PgCursor, booking_id: str, *, for_update: bool = False) -> Payment | None:
    """Most recent payment for the booking regardless of status."""
    query = f"""
        SELECT {_PAYMENT_COLUMNS}
        FROM payments
        WHERE booking_id = %s AND deleted_at IS NULL
        ORDER BY created_at DESC
        LIMIT 1
    """
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (booking_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_payment(row, _load_refunds(cur, str(row[0])))


def list_due_for_retry(
    cur: PgCursor,
    *,
    now: datetime,
    stale_before: datetime,
    limit: int = 50,
) -> list[str]:
    """Ids of payments the retry sweep should verify again.

    Two kinds qualify:
    - failed payments whose next_retry_at has passed, unless the booking
      was cancelled or already has another active payment
    - payments left in processing since before stale_before

    Rows locked by a concurrent sweep are skipped.
    """
    cur.execute(
        """
        SELECT p.id
        FROM payments p
        JOIN bookings b ON b.id = p.booking_id
        WHERE p.deleted_at IS NULL
          AND b.status <> 'cancelled'
          AND (
                (p.status = 'failed'
                 AND p.next_retry_at IS NOT NULL
                 AND p.next_retry_at <= %s
                 AND p.attempts < p.max_attempts
                 AND NOT EXISTS (
                     SELECT 1 FROM payments o
                     WHERE o.booking_id = p.booking_id
                       AND o.id <> p.id
                       AND o.status IN ('pending', 'processing', 'completed')
                       AND o.deleted_at IS NULL
                 ))
             OR (p.status = 'processing' AND p.processed_at <= %s)
          )
        ORDER BY COALESCE(p.next_retry_at, p.processed_at)
        LIMIT %s
        FOR UPDATE OF p SKIP LOCKED
        """,
        (now, stale_before, limit),
    )
    return [str(r[0]) for r in cur.fetchall()]


def find_retryable_payments(
    cur: PgCursor,
    booking_id: str,
    *,
    for_update: bool = False,
) -> list[Payment]:
    """The booking's failed payments that still have attempts left."""
    query = f"""
        SELECT {_PAYMENT_COLUMNS}
        FROM payments
        WHERE booking_id = %s
          AND status = 'failed'
          AND attempts < max_attempts
          AND deleted_at IS NULL
        ORDER BY created_at
    """
    if for_update:
        query += " FOR UPDATE"
    cur.execute(query, (booking_id,))
    return [_row_to_payment(row, _load_refunds(cur, str(row[0]))) for row in cur.fetchall()]


def save_payment(cur: PgCursor, payment: Payment) -> None:
    """Persist mutable payment fields and append new refund records."""
    cur.execute(
        """
        UPDATE payments
        SET status = %s,
            gateway_transaction_id = %s,
            gateway_reference = %s,
            fees = %s::jsonb,
            refunded_amount = %s,
            escrow = %s::jsonb,
            dispute = %s::jsonb,
            attempts = %s,
            max_attempts = %s,
            next_retry_at = %s,
            last_attempt_at = %s,
            processed_at = %s,
            completed_at = %s,
            failed_at = %s,
            refunded_at = %s,
            expires_at = %s,
            error_message = %s,
            error_code = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            payment.status.value,
            payment.gateway_transaction_id,
            payment.gateway_reference,
            json.dumps(payment.fees.to_json()) if payment.fees else None,
            payment.refunded_amount,
            json.dumps(payment.escrow.to_json()),
            json.dumps(payment.dispute.to_json()) if payment.dispute else None,
            payment.attempts,
            payment.max_attempts,
            payment.next_retry_at,
            payment.last_attempt_at,
            payment.processed_at,
            payment.completed_at,
            payment.failed_at,
            payment.refunded_at,
            payment.expires_at,
            payment.error_message,
            payment.error_code,
            payment.id,
        ),
    )
    for seq, refund in enumerate(payment.refund_details):
        cur.execute(
            """
            INSERT INTO payment_refunds (
                payment_id, seq, refund_id, amount, reason, refunded_at, gateway_refund_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (payment_id, seq) DO NOTHING
            """,
            (
                payment.id,
                seq,
                refund.refund_id,
                refund.amount,
                refund.reason,
                refund.refunded_at,
                refund.gateway_refund_id,
            ),
        )


def _load_refunds(cur: PgCursor, payment_id: str) -> list[RefundRecord]:
    cur.execute(
        """
        SELECT refund_id, amount, reason, refunded_at, gateway_refund_id
        FROM payment_refunds
        WHERE payment_id = %s
        ORDER BY seq
        """,
        (payment_id,),
    )
    return [
        RefundRecord(
            refund_id=r[0],
            amount=r[1],
            reason=r[2],
            refunded_at=r[3],
            gateway_refund_id=r[4],
        )
        for r in cur.fetchall()
    ]


def _row_to_payment(row: tuple[Any, ...], refunds: list[RefundRecord]) -> Payment:
    return Payment(
        id=str(row[0]),
        transaction_id=row[1],
        booking_id=str(row[2]),
        payer_id=row[3],
        payee_id=row[4],
        amount=row[5],
        currency=row[6],
        payment_method=PaymentMethod(row[7]),
        gateway=Gateway(row[8]),
        created_at=row[9],
        expires_at=row[10],
        exchange_rate=row[11],
        amount_in_base_currency=row[12],
        gateway_transaction_id=row[13],
        gateway_reference=row[14],
        status=PaymentStatus(row[15]),
        fees=Fees.from_json(row[16]) if row[16] else None,
        refunded_amount=row[17],
        escrow=EscrowDetails.from_json(row[18]),
        dispute=DisputeDetails.from_json(row[19]),
        attempts=row[20],
        max_attempts=row[21],
        next_retry_at=row[22],
        last_attempt_at=row[23],
        processed_at=row[24],
        completed_at=row[25],
        failed_at=row[26],
        refunded_at=row[27],
        error_message=row[28],
        error_code=row[29],
        refund_details=refunds,
    )
