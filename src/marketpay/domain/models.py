"""Booking and payment records.

History fields (timeline, refund records, reschedule request) are explicit
typed records rather than free-form JSON; the automata in
marketpay.domain.bookings / marketpay.domain.payments are the only code
that mutates them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any


# ── Enums ─────────────────────────────────────────────────


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class BookingPaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    EXPIRED = "expired"


# Statuses that occupy the single payment slot of a booking
ACTIVE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED}
)


class Gateway(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    WALLET = "wallet"


class ActorRole(str, Enum):
    REQUESTER = "requester"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Caller identity as asserted by the upstream auth layer."""

    id: str
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RefundStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# ── History records ───────────────────────────────────────


@dataclass(frozen=True)
class TimelineEvent:
    """One append-only audit entry on a booking."""

    event: str
    timestamp: datetime
    actor: str
    description: str


@dataclass
class RescheduleRequest:
    requested_by: str
    requested_date: date
    requested_time: time
    reason: str
    requested_at: datetime
    status: RescheduleStatus = RescheduleStatus.PENDING
    responded_at: datetime | None = None
    rejection_reason: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "requested_by": self.requested_by,
            "requested_date": self.requested_date.isoformat(),
            "requested_time": self.requested_time.isoformat(),
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
            "status": self.status.value,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RescheduleRequest:
        return cls(
            requested_by=data["requested_by"],
            requested_date=date.fromisoformat(data["requested_date"]),
            requested_time=time.fromisoformat(data["requested_time"]),
            reason=data["reason"],
            requested_at=datetime.fromisoformat(data["requested_at"]),
            status=RescheduleStatus(data["status"]),
            responded_at=_parse_dt(data.get("responded_at")),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class Cancellation:
    cancelled_by: str
    reason: str
    cancelled_at: datetime
    refund_amount: Decimal
    refund_status: RefundStatus
    hours_until_service: Decimal

    def to_json(self) -> dict[str, Any]:
        return {
            "cancelled_by": self.cancelled_by,
            "reason": self.reason,
            "cancelled_at": self.cancelled_at.isoformat(),
            "refund_amount": str(self.refund_amount),
            "refund_status": self.refund_status.value,
            "hours_until_service": str(self.hours_until_service),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Cancellation:
        return cls(
            cancelled_by=data["cancelled_by"],
            reason=data["reason"],
            cancelled_at=datetime.fromisoformat(data["cancelled_at"]),
            refund_amount=Decimal(data["refund_amount"]),
            refund_status=RefundStatus(data["refund_status"]),
            hours_until_service=Decimal(data["hours_until_service"]),
        )


@dataclass(frozen=True)
class Fees:
    platform_fee: Decimal
    gateway_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal

    def to_json(self) -> dict[str, str]:
        return {k: str(v) for k, v in asdict(self).items()}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Fees:
        return cls(**{k: Decimal(str(data[k])) for k in (
            "platform_fee", "gateway_fee", "processing_fee", "total_fees"
        )})


@dataclass(frozen=True)
class RefundRecord:
    """One partial (or final) refund executed against a payment."""

    refund_id: str
    amount: Decimal
    reason: str
    refunded_at: datetime
    gateway_refund_id: str | None = None


@dataclass
class EscrowDetails:
    is_escrowed: bool = False
    escrowed_at: datetime | None = None
    released_at: datetime | None = None
    hold_period_hours: int = 0
    release_condition: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "is_escrowed": self.is_escrowed,
            "escrowed_at": self.escrowed_at.isoformat() if self.escrowed_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "hold_period_hours": self.hold_period_hours,
            "release_condition": self.release_condition,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> EscrowDetails:
        if not data:
            return cls()
        return cls(
            is_escrowed=bool(data.get("is_escrowed")),
            escrowed_at=_parse_dt(data.get("escrowed_at")),
            released_at=_parse_dt(data.get("released_at")),
            hold_period_hours=int(data.get("hold_period_hours") or 0),
            release_condition=data.get("release_condition"),
        )


@dataclass
class DisputeDetails:
    dispute_id: str | None
    reason: str | None
    opened_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "dispute_id": self.dispute_id,
            "reason": self.reason,
            "opened_at": self.opened_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> DisputeDetails | None:
        if not data:
            return None
        return cls(
            dispute_id=data.get("dispute_id"),
            reason=data.get("reason"),
            opened_at=datetime.fromisoformat(data["opened_at"]),
        )


# ── Aggregates ────────────────────────────────────────────


@dataclass
class Booking:
    id: str
    booking_number: str
    service_id: str
    provider_id: str
    requester_id: str
    scheduled_date: date
    scheduled_time: time
    estimated_duration_minutes: int
    base_amount: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    currency: str
    created_at: datetime
    status: BookingStatus = BookingStatus.PENDING
    payment_status: BookingPaymentStatus = BookingPaymentStatus.PENDING
    location: dict[str, Any] = field(default_factory=dict)
    notes: str | None = None
    timeline: list[TimelineEvent] = field(default_factory=list)
    reschedule: RescheduleRequest | None = None
    reschedule_count: int = 0
    cancellation: Cancellation | None = None
    expires_at: datetime | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


@dataclass
class Payment:
    id: str
    transaction_id: str
    booking_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    gateway: Gateway
    created_at: datetime
    expires_at: datetime
    exchange_rate: Decimal = Decimal("1")
    amount_in_base_currency: Decimal = Decimal("0")
    gateway_transaction_id: str | None = None
    gateway_reference: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    fees: Fees | None = None
    refund_details: list[RefundRecord] = field(default_factory=list)
    refunded_amount: Decimal = Decimal("0")
    escrow: EscrowDetails = field(default_factory=EscrowDetails)
    dispute: DisputeDetails | None = None
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    refunded_at: datetime | None = None
    error_message: str | None = None
    error_code: str | None = None

    @property
    def remaining_refundable(self) -> Decimal:
        return self.amount - self.refunded_amount


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
