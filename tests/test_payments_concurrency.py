"""Active-payment uniqueness and webhook dedupe under real Postgres.

Requires DATABASE_URL pointing at a migrated database.
"""

from __future__ import annotations

import os
import threading
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from marketpay.domain import bookings, payments
from marketpay.domain.models import Gateway, PaymentMethod, PaymentStatus
from marketpay.infra.db import txn
from marketpay.infra.repositories import (
    bookings_repository,
    gateway_events_repository,
    payments_repository,
)
from marketpay.infra.time import utc_now

pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping concurrency tests",
)

CONTENDERS = 8


@pytest.fixture
def booking():
    now = utc_now()
    start = now + timedelta(days=3)
    provider_id = f"provider-{uuid.uuid4().hex[:8]}"
    with txn() as cur:
        cur.execute(
            """
            INSERT INTO services (provider_id, title, price, currency, duration_minutes)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (provider_id, "Concurrency test", Decimal("100"), "NGN", 60),
        )
        service_id = str(cur.fetchone()[0])
        created = bookings.new_booking(
            service_id=service_id,
            provider_id=provider_id,
            requester_id="requester-concurrency",
            scheduled_date=start.date(),
            scheduled_time=start.time().replace(tzinfo=None),
            estimated_duration_minutes=60,
            base_amount=Decimal("100"),
            currency="NGN",
            now=now,
        )
        bookings_repository.insert_booking(cur, created)

    yield created

    with txn() as cur:
        cur.execute(
            "DELETE FROM payment_refunds WHERE payment_id IN (SELECT id FROM payments WHERE booking_id = %s)",
            (created.id,),
        )
        cur.execute("DELETE FROM payments WHERE booking_id = %s", (created.id,))
        cur.execute("DELETE FROM booking_timeline WHERE booking_id = %s", (created.id,))
        cur.execute("DELETE FROM bookings WHERE id = %s", (created.id,))
        cur.execute("DELETE FROM services WHERE id = %s", (service_id,))


def _new_payment(booking):
    return payments.new_payment(
        booking,
        payer_id=booking.requester_id,
        payment_method=PaymentMethod.CARD,
        gateway=Gateway.STRIPE,
        now=utc_now(),
    )


def test_concurrent_inserts_leave_one_active_payment(booking):
    barrier = threading.Barrier(CONTENDERS)
    results: list[bool] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def contend():
        payment = _new_payment(booking)
        try:
            barrier.wait()
            with txn() as cur:
                inserted = payments_repository.insert_payment(cur, payment)
        except Exception as e:  # surfaced by the assertion below
            with lock:
                errors.append(e)
            return
        with lock:
            results.append(inserted)

    threads = [threading.Thread(target=contend) for _ in range(CONTENDERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert results.count(True) == 1
    with txn() as cur:
        cur.execute(
            "SELECT count(*) FROM payments WHERE booking_id = %s AND status = 'pending'",
            (booking.id,),
        )
        assert cur.fetchone()[0] == 1


def test_expired_payment_frees_the_slot(booking):
    first = _new_payment(booking)
    with txn() as cur:
        assert payments_repository.insert_payment(cur, first)

    payments.expire(first, first.expires_at + timedelta(seconds=1))
    with txn() as cur:
        payments_repository.save_payment(cur, first)
        assert payments_repository.insert_payment(cur, _new_payment(booking))

    with txn() as cur:
        stored = payments_repository.get_payment(cur, first.id)
    assert stored.status == PaymentStatus.EXPIRED


def test_event_receipt_recorded_once():
    event_id = f"evt_{uuid.uuid4().hex}"
    try:
        with txn() as cur:
            assert gateway_events_repository.record_event_receipt(
                cur, gateway="stripe", event_id=event_id, event_type="payment_intent.succeeded"
            )
        with txn() as cur:
            assert not gateway_events_repository.record_event_receipt(
                cur, gateway="stripe", event_id=event_id, event_type="payment_intent.succeeded"
            )
    finally:
        with txn() as cur:
            cur.execute("DELETE FROM gateway_events WHERE event_id = %s", (event_id,))
