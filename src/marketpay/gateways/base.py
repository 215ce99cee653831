"""Gateway adapter contract.

Payment orchestration is written against PaymentGateway only. Concrete
providers live in sibling modules and are picked once by the registry.
Adapters never log payloads, signatures or keys; only ids and statuses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from marketpay.domain.fees import to_decimal


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    DISPUTE_CREATED = "dispute_created"
    UNHANDLED = "unhandled"


@dataclass
class GatewayIntent:
    """Provider-side handle created for a pending payment."""

    gateway_transaction_id: str
    reference: str
    client_secret: str | None = None
    authorization_url: str | None = None


@dataclass
class GatewayVerification:
    """Server-side verification result for a transaction."""

    succeeded: bool
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    reference: str | None = None
    failure_reason: str | None = None


@dataclass
class GatewayRefund:
    gateway_refund_id: str
    status: str


@dataclass
class GatewayEvent:
    """Authenticated webhook event, reduced to what reconciliation needs."""

    event_id: str
    kind: EventKind
    event_type: str
    gateway_transaction_id: str | None = None
    failure_reason: str | None = None
    dispute_id: str | None = None
    dispute_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Capability interface implemented once per provider."""

    name: str

    def create_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        idempotency_key: str,
        email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayIntent: ...

    def verify_transaction(self, gateway_transaction_id: str) -> GatewayVerification: ...

    def create_refund(
        self,
        *,
        gateway_transaction_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> GatewayRefund: ...

    def validate_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent: ...


def to_minor_units(amount: Decimal) -> int:
    """Decimal major units -> integer minor units (cents, kobo)."""
    return int((to_decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: int | None) -> Decimal | None:
    if amount is None:
        return None
    return Decimal(amount) / Decimal(100)
