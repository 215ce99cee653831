"""Payment endpoints: intents, confirmation, refunds, reads."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field

from marketpay.api.actor import get_actor
from marketpay.api.errors import http_error
from marketpay.api.views import payment_view
from marketpay.domain.errors import MarketpayError
from marketpay.domain.models import Actor, Gateway, PaymentMethod
from marketpay.gateways.registry import GatewayRegistry
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context
from marketpay.services import payment_service
from marketpay.services.notifications import Notifier, build_notifier

router = APIRouter(prefix="/payments", tags=["payments"])

logger = get_logger(__name__)

# Module-level collaborators (lazy init, can be overridden for tests)
_gateway_registry: GatewayRegistry | None = None
_notifier: Notifier | None = None


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


class CreateIntentRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    gateway: Gateway
    payment_method: PaymentMethod = PaymentMethod.CARD
    email: str | None = Field(None, max_length=320)
    exchange_rate: Decimal = Field(Decimal("1"), gt=0)


class ConfirmPaymentRequest(BaseModel):
    gateway_transaction_id: str | None = Field(None, max_length=255)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(None, gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


@router.post("/intents", status_code=201)
def create_payment_intent(
    body: CreateIntentRequest,
    actor: Actor = Depends(get_actor),
) -> dict:
    """Open a pending payment for a booking and return the gateway handle.

    409 if the booking already has an active payment.
    """
    logger.info(
        "creating payment intent",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                booking_id=body.booking_id,
                gateway=body.gateway,
            )
        },
    )
    try:
        result = payment_service.create_payment_intent(
            body.booking_id,
            actor=actor,
            payment_method=body.payment_method,
            gateway=body.gateway,
            email=body.email,
            exchange_rate=body.exchange_rate,
            gateways=_get_gateway_registry(),
        )
    except MarketpayError as e:
        raise http_error(e) from e

    return {
        "payment_id": result.payment.id,
        "gateway_intent_ref": result.intent.gateway_transaction_id,
        "client_secret": result.intent.client_secret,
        "authorization_url": result.intent.authorization_url,
        "payment": payment_view(result.payment),
    }


@router.get("/{payment_id}")
def get_payment(
    payment_id: str = Path(..., description="Payment UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        payment = payment_service.get_payment(payment_id, actor=actor)
    except MarketpayError as e:
        raise http_error(e) from e
    return payment_view(payment)


@router.post("/{payment_id}/confirm")
def confirm_payment(
    body: ConfirmPaymentRequest | None = None,
    payment_id: str = Path(..., description="Payment UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    """Verify the payment with its gateway.

    402 when the gateway reports failure; a transient gateway outage
    returns 200 with the payment failed and next_retry_at set.
    """
    try:
        payment = payment_service.confirm_payment(
            payment_id,
            actor=actor,
            gateway_transaction_id=body.gateway_transaction_id if body else None,
            gateways=_get_gateway_registry(),
            notifier=_get_notifier(),
        )
    except MarketpayError as e:
        raise http_error(e) from e
    return payment_view(payment)


@router.post("/{payment_id}/refund")
def refund_payment(
    body: RefundRequest,
    payment_id: str = Path(..., description="Payment UUID"),
    actor: Actor = Depends(get_actor),
) -> dict:
    try:
        result = payment_service.refund_payment(
            payment_id,
            actor=actor,
            amount=body.amount,
            reason=body.reason,
            gateways=_get_gateway_registry(),
            notifier=_get_notifier(),
        )
    except MarketpayError as e:
        raise http_error(e) from e

    return {
        "refund_id": result.refund.refund_id,
        "amount": str(result.refund.amount),
        "payment": payment_view(result.payment),
    }
