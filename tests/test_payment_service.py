"""Tests for payment orchestration against the in-memory store."""

from __future__ import annotations

from decimal import Decimal

import pytest

from marketpay.domain.errors import (
    AuthorizationError,
    BookingExpiredError,
    DuplicatePaymentError,
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    NotRefundableError,
    PaymentExpiredError,
    VerificationFailedError,
)
from marketpay.domain.models import (
    Actor,
    ActorRole,
    BookingPaymentStatus,
    BookingStatus,
    Gateway,
    PaymentMethod,
    PaymentStatus,
)
from marketpay.gateways.base import GatewayVerification
from marketpay.services import payment_service

from fakes import declined, unavailable


def _intent(store, booking_id, actor, registry):
    return payment_service.create_payment_intent(
        booking_id,
        actor=actor,
        payment_method=PaymentMethod.CARD,
        gateway=Gateway.STRIPE,
        gateways=registry,
    )


def _paid(store, clock, registry, requester, notifier=None):
    booking = store.add_booking(clock())
    result = _intent(store, booking.id, requester, registry)
    payment_service.confirm_payment(
        result.payment.id, actor=requester, gateways=registry, notifier=notifier
    )
    return booking.id, result.payment.id


class TestCreatePaymentIntent:
    def test_creates_pending_payment_with_idempotency_key(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())

        result = _intent(store, booking.id, requester, registry)

        stored = store.payment(result.payment.id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.amount == Decimal("102.50")
        assert stored.payer_id == requester.id
        assert stored.gateway_transaction_id == result.intent.gateway_transaction_id
        assert gateway.intents[0]["idempotency_key"] == f"payment:{stored.transaction_id}"

    def test_second_intent_is_duplicate(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        _intent(store, booking.id, requester, registry)

        with pytest.raises(DuplicatePaymentError):
            _intent(store, booking.id, requester, registry)
        assert len(store.payments) == 1
        assert len(gateway.intents) == 1

    def test_expired_pending_payment_does_not_block(self, store, clock, registry, requester):
        booking = store.add_booking(clock())
        first = _intent(store, booking.id, requester, registry)
        clock.advance(minutes=31)

        second = _intent(store, booking.id, requester, registry)

        assert store.payment(first.payment.id).status == PaymentStatus.EXPIRED
        assert store.payment(second.payment.id).status == PaymentStatus.PENDING

    def test_only_requester_can_pay(self, store, clock, registry, provider):
        booking = store.add_booking(clock())
        with pytest.raises(AuthorizationError):
            _intent(store, booking.id, provider, registry)

    def test_expired_booking_rejected(self, store, clock, registry, requester):
        booking = store.add_booking(clock())
        clock.advance(hours=25)
        with pytest.raises(BookingExpiredError):
            _intent(store, booking.id, requester, registry)

    def test_cancelled_booking_rejected(self, store, clock, registry, requester):
        booking = store.add_booking(clock())
        store.booking(booking.id).status = BookingStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            _intent(store, booking.id, requester, registry)

    def test_gateway_outage_persists_nothing(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        gateway.intent_error = unavailable()
        with pytest.raises(GatewayUnavailableError):
            _intent(store, booking.id, requester, registry)
        assert store.payments == {}

    def test_unknown_booking(self, store, registry, requester):
        with pytest.raises(NotFoundError):
            _intent(store, "00000000-0000-0000-0000-000000000000", requester, registry)

    def test_new_intent_closes_retries_of_failed_payment(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        first = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [declined()]
        with pytest.raises(VerificationFailedError):
            payment_service.confirm_payment(first.payment.id, actor=requester, gateways=registry)

        second = _intent(store, booking.id, requester, registry)

        replaced = store.payment(first.payment.id)
        assert replaced.status == PaymentStatus.FAILED
        assert replaced.next_retry_at is None
        assert replaced.max_attempts == replaced.attempts == 1
        assert replaced.error_code == "superseded"
        assert store.payment(second.payment.id).status == PaymentStatus.PENDING
        assert store.booking(booking.id).payment_status == BookingPaymentStatus.PENDING

    def test_refunded_booking_takes_no_new_payment(self, store, clock, registry, gateway, requester, provider):
        booking_id, payment_id = _paid(store, clock, registry, requester)
        payment_service.refund_payment(payment_id, actor=provider, reason="job cancelled", gateways=registry)
        assert store.booking(booking_id).payment_status == BookingPaymentStatus.REFUNDED

        with pytest.raises(InvalidTransitionError):
            _intent(store, booking_id, requester, registry)
        assert len(store.payments) == 1
        assert len(gateway.intents) == 1


class TestConfirmPayment:
    def test_success_completes_and_confirms_booking(self, store, clock, registry, gateway, notifier, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [
            GatewayVerification(succeeded=True, status="succeeded", amount=Decimal("102.50"))
        ]

        payment = payment_service.confirm_payment(
            result.payment.id, actor=requester, gateways=registry, notifier=notifier
        )

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.fees.platform_fee == Decimal("2.50")
        assert payment.fees.gateway_fee == Decimal("3.27")
        assert payment.fees.processing_fee == Decimal("0.00")
        assert payment.fees.total_fees == Decimal("5.77")
        assert payment.escrow.is_escrowed
        assert payment.escrow.hold_period_hours == 72

        stored_booking = store.booking(booking.id)
        assert stored_booking.status == BookingStatus.CONFIRMED
        assert stored_booking.payment_status == BookingPaymentStatus.PAID
        assert notifier.events() == ["payment_completed", "booking_confirmed"]

    def test_locks_booking_before_payment(self, store, clock, registry, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        store.locks.clear()

        payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        assert store.locks[:2] == [f"booking:{booking.id}", f"payment:{result.payment.id}"]

    def test_confirming_completed_payment_is_noop(self, store, clock, registry, gateway, requester):
        _, payment_id = _paid(store, clock, registry, requester)

        payment = payment_service.confirm_payment(payment_id, actor=requester, gateways=registry)

        assert payment.status == PaymentStatus.COMPLETED
        assert len(gateway.verifications) == 1

    def test_expired_payment(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        clock.advance(minutes=31)

        with pytest.raises(PaymentExpiredError):
            payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)
        assert store.payment(result.payment.id).status == PaymentStatus.EXPIRED
        assert gateway.verifications == []

    def test_declined_is_persisted_before_raising(self, store, clock, registry, gateway, notifier, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [declined("insufficient funds")]

        with pytest.raises(VerificationFailedError):
            payment_service.confirm_payment(
                result.payment.id, actor=requester, gateways=registry, notifier=notifier
            )

        stored = store.payment(result.payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.attempts == 1
        assert stored.error_message == "insufficient funds"
        assert stored.next_retry_at == clock() + payment_service.payments.retry_delay(1)
        assert store.booking(booking.id).payment_status == BookingPaymentStatus.FAILED
        assert notifier.events() == ["payment_failed"]

    def test_three_declines_exhaust_attempts(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [declined()]

        for _ in range(3):
            with pytest.raises(VerificationFailedError):
                payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)
            clock.advance(minutes=5)

        stored = store.payment(result.payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.attempts == 3
        assert stored.next_retry_at is None

        with pytest.raises(InvalidTransitionError):
            payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)
        assert store.payment(result.payment.id).attempts == 3

    def test_gateway_outage_schedules_retry_without_raising(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [unavailable()]

        payment = payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        assert payment.status == PaymentStatus.FAILED
        assert payment.error_code == "gateway_unavailable"
        assert payment.next_retry_at is not None

    def test_gateway_rejection_is_persisted_with_retry(self, store, clock, registry, gateway, notifier, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [GatewayError("No such payment_intent")]

        with pytest.raises(GatewayError):
            payment_service.confirm_payment(
                result.payment.id, actor=requester, gateways=registry, notifier=notifier
            )

        stored = store.payment(result.payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.attempts == 1
        assert stored.error_code == "gateway_error"
        assert stored.next_retry_at == clock() + payment_service.payments.retry_delay(1)
        assert store.booking(booking.id).payment_status == BookingPaymentStatus.FAILED
        assert notifier.events() == ["payment_failed"]

    def test_recent_processing_payment_is_left_alone(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        stuck = store.payment(result.payment.id)
        stuck.status = PaymentStatus.PROCESSING
        stuck.processed_at = clock()
        clock.advance(minutes=1)

        payment = payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        assert payment.status == PaymentStatus.PROCESSING
        assert gateway.verifications == []

    def test_stale_processing_payment_is_verified_again(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        stuck = store.payment(result.payment.id)
        stuck.status = PaymentStatus.PROCESSING
        stuck.processed_at = clock()
        clock.advance(minutes=6)

        payment = payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        assert payment.status == PaymentStatus.COMPLETED
        assert gateway.verifications == [result.intent.gateway_transaction_id]
        assert store.booking(booking.id).payment_status == BookingPaymentStatus.PAID

    def test_replaced_payment_cannot_be_retried(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        first = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [declined()]
        with pytest.raises(VerificationFailedError):
            payment_service.confirm_payment(first.payment.id, actor=requester, gateways=registry)
        second = _intent(store, booking.id, requester, registry)
        # a row written before retries were closed on replacement
        old = store.payment(first.payment.id)
        old.max_attempts = 3
        old.next_retry_at = clock()
        gateway.verify_results = [GatewayVerification(succeeded=True, status="succeeded")]

        with pytest.raises(DuplicatePaymentError):
            payment_service.confirm_payment(first.payment.id, actor=requester, gateways=registry)

        old = store.payment(first.payment.id)
        assert old.status == PaymentStatus.FAILED
        assert old.next_retry_at is None
        assert old.error_code == "superseded"
        assert store.payment(second.payment.id).status == PaymentStatus.PENDING
        active = [p for p in store.payments.values() if p.status != PaymentStatus.FAILED]
        assert [p.id for p in active] == [second.payment.id]

    def test_amount_mismatch_fails(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [
            GatewayVerification(succeeded=True, status="succeeded", amount=Decimal("1.00"))
        ]

        with pytest.raises(VerificationFailedError):
            payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)
        assert store.payment(result.payment.id).error_code == "verification_failed"

    def test_only_payer_confirms(self, store, clock, registry, requester, provider):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        with pytest.raises(AuthorizationError):
            payment_service.confirm_payment(result.payment.id, actor=provider, gateways=registry)

    def test_processing_fee_outside_base_currency(self, store, clock, registry, requester):
        booking = store.add_booking(clock(), currency="USD")
        result = _intent(store, booking.id, requester, registry)

        payment = payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        assert payment.fees.processing_fee == Decimal("1.03")


class TestRefunds:
    def test_partial_then_full_refund(self, store, clock, registry, gateway, notifier, requester, provider):
        booking_id, payment_id = _paid(store, clock, registry, requester)

        first = payment_service.refund_payment(
            payment_id, actor=provider, reason="goodwill", amount=Decimal("40"),
            gateways=registry, notifier=notifier,
        )
        assert first.refund.amount == Decimal("40.00")
        assert first.payment.status == PaymentStatus.COMPLETED
        assert gateway.refunds[0]["idempotency_key"] == f"refund:{payment_id}:0"

        second = payment_service.refund_payment(
            payment_id, actor=provider, reason="rest", gateways=registry, notifier=notifier,
        )
        assert second.refund.amount == Decimal("62.50")
        assert second.payment.status == PaymentStatus.REFUNDED
        assert gateway.refunds[1]["idempotency_key"] == f"refund:{payment_id}:1"

        stored = store.payment(payment_id)
        assert stored.refunded_amount == sum(r.amount for r in stored.refund_details)
        assert store.booking(booking_id).payment_status == BookingPaymentStatus.REFUNDED
        assert notifier.events().count("refund_processed") == 2

        with pytest.raises(NotRefundableError):
            payment_service.refund_payment(payment_id, actor=provider, reason="again", gateways=registry)

    def test_requester_cannot_refund(self, store, clock, registry, requester):
        _, payment_id = _paid(store, clock, registry, requester)
        with pytest.raises(AuthorizationError):
            payment_service.refund_payment(payment_id, actor=requester, reason="mine", gateways=registry)

    def test_gateway_rejection_records_nothing(self, store, clock, registry, gateway, requester, admin):
        _, payment_id = _paid(store, clock, registry, requester)
        gateway.refund_error = GatewayError("declined")

        with pytest.raises(GatewayError):
            payment_service.refund_payment(payment_id, actor=admin, reason="ops", gateways=registry)

        stored = store.payment(payment_id)
        assert stored.refunded_amount == Decimal("0")
        assert stored.refund_details == []

    def test_pending_payment_not_refundable(self, store, clock, registry, requester, admin):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        with pytest.raises(NotRefundableError):
            payment_service.refund_payment(result.payment.id, actor=admin, reason="x", gateways=registry)


class TestEscrow:
    def test_release_is_idempotent(self, store, clock, registry, notifier, requester, admin):
        _, payment_id = _paid(store, clock, registry, requester)

        assert payment_service.release_payment_from_escrow(payment_id, actor=admin, notifier=notifier) is True
        assert payment_service.release_payment_from_escrow(payment_id, actor=admin, notifier=notifier) is False
        assert store.payment(payment_id).escrow.released_at == clock()
        assert notifier.events().count("escrow_released") == 1

    def test_release_requires_admin(self, store, clock, registry, requester, provider):
        _, payment_id = _paid(store, clock, registry, requester)
        with pytest.raises(AuthorizationError):
            payment_service.release_payment_from_escrow(payment_id, actor=provider)

    def test_manual_hold_when_automatic_escrow_disabled(self, monkeypatch, store, clock, registry, requester, admin):
        monkeypatch.setenv("ESCROW_HOLD_HOURS", "0")
        _, payment_id = _paid(store, clock, registry, requester)
        assert not store.payment(payment_id).escrow.is_escrowed

        payment = payment_service.hold_payment_in_escrow(payment_id, actor=admin, hold_period_hours=24)
        assert payment.escrow.is_escrowed
        with pytest.raises(InvalidTransitionError):
            payment_service.hold_payment_in_escrow(payment_id, actor=admin, hold_period_hours=24)


class TestRetrySweep:
    def test_due_payment_is_reverified(self, store, clock, registry, gateway, notifier, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [unavailable()]
        payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        clock.advance(minutes=2)
        gateway.verify_results = [GatewayVerification(succeeded=True, status="succeeded")]
        counts = payment_service.retry_due_payments(gateways=registry, notifier=notifier)

        assert counts == {"due": 1, "completed": 1, "failed": 0, "skipped": 0}
        assert store.payment(result.payment.id).status == PaymentStatus.COMPLETED
        assert store.booking(booking.id).payment_status == BookingPaymentStatus.PAID

    def test_not_yet_due(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [unavailable()]
        payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        counts = payment_service.retry_due_payments(gateways=registry)
        assert counts["due"] == 0

    def test_still_declined_counts_as_failed(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [unavailable()]
        payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        clock.advance(minutes=2)
        gateway.verify_results = [declined()]
        counts = payment_service.retry_due_payments(gateways=registry)

        assert counts == {"due": 1, "completed": 0, "failed": 1, "skipped": 0}
        assert store.payment(result.payment.id).attempts == 2

    def test_gateway_rejection_does_not_stop_the_sweep(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [unavailable()]
        payment_service.confirm_payment(result.payment.id, actor=requester, gateways=registry)

        clock.advance(minutes=2)
        gateway.verify_results = [GatewayError("No such payment_intent")]
        counts = payment_service.retry_due_payments(gateways=registry)

        assert counts == {"due": 1, "completed": 0, "failed": 1, "skipped": 0}
        stored = store.payment(result.payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.attempts == 2
        assert stored.next_retry_at is not None

    def test_replaced_payment_is_not_due(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        first = _intent(store, booking.id, requester, registry)
        gateway.verify_results = [declined()]
        with pytest.raises(VerificationFailedError):
            payment_service.confirm_payment(first.payment.id, actor=requester, gateways=registry)
        second = _intent(store, booking.id, requester, registry)

        clock.advance(minutes=2)
        gateway.verify_results = [GatewayVerification(succeeded=True, status="succeeded")]
        counts = payment_service.retry_due_payments(gateways=registry)

        assert counts["due"] == 0
        assert store.payment(first.payment.id).status == PaymentStatus.FAILED
        assert store.payment(second.payment.id).status == PaymentStatus.PENDING
        assert gateway.verifications == [first.intent.gateway_transaction_id]

    def test_stale_processing_payment_is_picked_up(self, store, clock, registry, gateway, requester):
        booking = store.add_booking(clock())
        result = _intent(store, booking.id, requester, registry)
        stuck = store.payment(result.payment.id)
        stuck.status = PaymentStatus.PROCESSING
        stuck.processed_at = clock()

        clock.advance(minutes=1)
        assert payment_service.retry_due_payments(gateways=registry)["due"] == 0

        clock.advance(minutes=5)
        counts = payment_service.retry_due_payments(gateways=registry)

        assert counts == {"due": 1, "completed": 1, "failed": 0, "skipped": 0}
        assert store.payment(result.payment.id).status == PaymentStatus.COMPLETED


class TestGetPayment:
    def test_parties_can_read(self, store, clock, registry, requester, provider):
        _, payment_id = _paid(store, clock, registry, requester)
        assert payment_service.get_payment(payment_id, actor=provider).id == payment_id

    def test_stranger_cannot_read(self, store, clock, registry, requester):
        _, payment_id = _paid(store, clock, registry, requester)
        with pytest.raises(AuthorizationError):
            payment_service.get_payment(payment_id, actor=Actor(id="someone", role=ActorRole.REQUESTER))

    def test_missing(self, store, requester):
        with pytest.raises(NotFoundError):
            payment_service.get_payment("missing", actor=requester)
