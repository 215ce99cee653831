"""Tests for the fee and refund calculator."""

from decimal import Decimal

import pytest

from marketpay.domain.fees import (
    compute_payment_fees,
    gateway_fee,
    net_amount,
    platform_fee,
    price_booking,
    processing_fee,
    quantize_money,
    refund_amount,
    refund_percentage,
)


class TestPlatformFee:
    def test_two_and_a_half_percent(self):
        assert quantize_money(platform_fee(Decimal("100"))) == Decimal("2.50")

    def test_price_booking_snapshot(self):
        price = price_booking(Decimal("100"))
        assert price.base_amount == Decimal("100.00")
        assert price.platform_fee == Decimal("2.50")
        assert price.total_amount == Decimal("102.50")

    def test_float_input_has_no_binary_artefacts(self):
        price = price_booking(19.99)
        assert price.total_amount == Decimal("20.49")


class TestGatewayFee:
    @pytest.mark.parametrize(
        "gateway,expected",
        [
            ("paystack", Decimal("101.54")),
            ("stripe", Decimal("3.27")),
            ("flutterwave", Decimal("1.44")),
            ("unknown", Decimal("2.05")),
        ],
    )
    def test_provider_schedules(self, gateway, expected):
        assert quantize_money(gateway_fee(Decimal("102.50"), gateway)) == expected

    def test_gateway_name_is_case_insensitive(self):
        assert gateway_fee(Decimal("10"), "STRIPE") == gateway_fee(Decimal("10"), "stripe")


class TestProcessingFee:
    def test_zero_in_base_currency(self):
        assert processing_fee(Decimal("500"), "ngn", "NGN") == Decimal("0")

    def test_one_percent_outside_base_currency(self):
        assert processing_fee(Decimal("500"), "USD", "NGN") == Decimal("5.00")


class TestRefundPercentage:
    @pytest.mark.parametrize(
        "hours,expected",
        [
            (Decimal("72"), Decimal("1")),
            (Decimal("48"), Decimal("1")),
            (Decimal("47.99"), Decimal("0.75")),
            (Decimal("24"), Decimal("0.75")),
            (Decimal("12"), Decimal("0.5")),
            (Decimal("2"), Decimal("0.25")),
            (Decimal("1.99"), Decimal("0")),
            (Decimal("-3"), Decimal("0")),
        ],
    )
    def test_tiers_and_boundaries(self, hours, expected):
        assert refund_percentage(hours) == expected

    def test_pure(self):
        assert refund_percentage(30) == refund_percentage(30)

    def test_thirty_hours_before_refunds_three_quarters(self):
        assert quantize_money(refund_amount(Decimal("200"), 30)) == Decimal("150.00")

    def test_one_hour_before_refunds_nothing(self):
        assert quantize_money(refund_amount(Decimal("200"), 1)) == Decimal("0.00")


class TestPaymentFees:
    def test_breakdown_sums_to_total(self):
        fees = compute_payment_fees(
            amount=Decimal("102.50"),
            base_amount=Decimal("100"),
            gateway="stripe",
            currency="USD",
            base_currency="NGN",
        )
        assert fees.platform_fee == Decimal("2.50")
        assert fees.gateway_fee == Decimal("3.27")
        assert fees.processing_fee == Decimal("1.03")
        # Rounded once from the unrounded sum 6.4975
        assert fees.total_fees == Decimal("6.50")

    def test_net_amount(self):
        assert net_amount(Decimal("102.50"), [Decimal("6.50")]) == Decimal("96.00")
