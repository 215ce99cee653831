"""Fee and refund calculator.

Pure, deterministic functions over Decimal. Intermediate results are never
rounded; callers round once with quantize_money() where a value is
persisted or returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Union

from marketpay.domain.models import Fees

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")

PLATFORM_FEE_RATE = Decimal("0.025")
PROCESSING_FEE_RATE = Decimal("0.01")


@dataclass(frozen=True)
class GatewayFeeSchedule:
    """Provider pricing: amount * rate + fixed."""

    rate: Decimal
    fixed: Decimal = Decimal("0")


GATEWAY_FEE_SCHEDULES: dict[str, GatewayFeeSchedule] = {
    "paystack": GatewayFeeSchedule(Decimal("0.015"), Decimal("100")),
    "stripe": GatewayFeeSchedule(Decimal("0.029"), Decimal("0.30")),
    "flutterwave": GatewayFeeSchedule(Decimal("0.014")),
}
DEFAULT_GATEWAY_FEE = GatewayFeeSchedule(Decimal("0.02"))

# (minimum hours before service, refunded fraction), highest tier first.
# This table is policy: changing it is a product decision, not a fix.
REFUND_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("48"), Decimal("1")),
    (Decimal("24"), Decimal("0.75")),
    (Decimal("12"), Decimal("0.5")),
    (Decimal("2"), Decimal("0.25")),
)


@dataclass(frozen=True)
class BookingPrice:
    base_amount: Decimal
    platform_fee: Decimal
    total_amount: Decimal


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize_money(value: Number) -> Decimal:
    """Round a money amount to 2 decimal places (half up)."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee(base_amount: Number) -> Decimal:
    """Platform fee: 2.5% of the base amount."""
    return to_decimal(base_amount) * PLATFORM_FEE_RATE


def gateway_fee(amount: Number, gateway: str) -> Decimal:
    """Provider-specific gateway fee: amount * rate + fixed."""
    schedule = GATEWAY_FEE_SCHEDULES.get(str(gateway).lower(), DEFAULT_GATEWAY_FEE)
    return to_decimal(amount) * schedule.rate + schedule.fixed


def processing_fee(amount: Number, currency: str, base_currency: str) -> Decimal:
    """Currency-conversion fee, charged only outside the base currency."""
    if currency.upper() == base_currency.upper():
        return Decimal("0")
    return to_decimal(amount) * PROCESSING_FEE_RATE


def refund_percentage(hours_until_service: Number) -> Decimal:
    """Fraction of the total refunded for a cancellation.

    Step function: >=48h -> 1, >=24h -> 0.75, >=12h -> 0.5, >=2h -> 0.25,
    otherwise 0. Boundary values resolve to the higher tier.
    """
    hours = to_decimal(hours_until_service)
    for threshold, fraction in REFUND_TIERS:
        if hours >= threshold:
            return fraction
    return Decimal("0")


def refund_amount(total_amount: Number, hours_until_service: Number) -> Decimal:
    """Unrounded refund owed for cancelling hours_until_service ahead."""
    return to_decimal(total_amount) * refund_percentage(hours_until_service)


def net_amount(amount: Number, fees: Iterable[Number]) -> Decimal:
    """Amount left after subtracting every fee component."""
    return to_decimal(amount) - sum((to_decimal(f) for f in fees), Decimal("0"))


def price_booking(base_amount: Number) -> BookingPrice:
    """Money snapshot for a new booking: base + platform fee = total."""
    base = to_decimal(base_amount)
    fee = platform_fee(base)
    return BookingPrice(
        base_amount=quantize_money(base),
        platform_fee=quantize_money(fee),
        total_amount=quantize_money(base + fee),
    )


def compute_payment_fees(
    *,
    amount: Number,
    base_amount: Number,
    gateway: str,
    currency: str,
    base_currency: str,
) -> Fees:
    """Fee breakdown recorded on a payment when it completes.

    The platform fee is charged on the booking's base amount; gateway and
    processing fees on the amount actually charged.
    """
    platform = platform_fee(base_amount)
    gateway_part = gateway_fee(amount, gateway)
    processing = processing_fee(amount, currency, base_currency)
    total = platform + gateway_part + processing
    return Fees(
        platform_fee=quantize_money(platform),
        gateway_fee=quantize_money(gateway_part),
        processing_fee=quantize_money(processing),
        total_fees=quantize_money(total),
    )
