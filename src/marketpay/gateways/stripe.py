"""Stripe adapter (PaymentIntents API).

Amounts go over the wire in minor units. Transient SDK errors (network,
rate limit, 5xx) surface as GatewayUnavailableError so the caller can
schedule a retry; anything else is a GatewayError.
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import stripe

from marketpay.domain.errors import (
    GatewayError,
    GatewayUnavailableError,
    SignatureInvalidError,
)
from marketpay.gateways.base import (
    EventKind,
    GatewayEvent,
    GatewayIntent,
    GatewayRefund,
    GatewayVerification,
    from_minor_units,
    to_minor_units,
)
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

_EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "charge.dispute.created": EventKind.DISPUTE_CREATED,
}


class StripeGateway:
    """PaymentGateway backed by the Stripe SDK.

    Usage:
        gateway = StripeGateway()  # reads STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET
        intent = gateway.create_intent(
            amount=Decimal("102.50"),
            currency="usd",
            reference="TXN1700000000000ABC123",
            idempotency_key="payment:TXN1700000000000ABC123",
        )
    """

    name = "stripe"

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )
        self._webhook_secret = webhook_secret or os.environ.get("STRIPE_WEBHOOK_SECRET", "")
        self._timeout = timeout or float(os.environ.get("GATEWAY_HTTP_TIMEOUT", "15"))

    def _client(self) -> stripe.StripeClient:
        return stripe.StripeClient(
            self._api_key,
            http_client=stripe.RequestsClient(timeout=self._timeout),
        )

    def create_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        idempotency_key: str,
        email: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayIntent:
        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": {"transaction_id": reference, **(metadata or {})},
            "automatic_payment_methods": {"enabled": True},
        }
        if email:
            params["receipt_email"] = email

        intent = self._call(
            "create_intent",
            lambda: self._client().v1.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            ),
        )

        logger.info(
            "stripe payment intent created",
            extra={
                "extra_fields": safe_log_context(
                    intent_id_prefix=id_prefix(intent.id),
                    transaction_id=reference,
                )
            },
        )
        return GatewayIntent(
            gateway_transaction_id=intent.id,
            reference=reference,
            client_secret=intent.client_secret,
        )

    def verify_transaction(self, gateway_transaction_id: str) -> GatewayVerification:
        intent = self._call(
            "verify_transaction",
            lambda: self._client().v1.payment_intents.retrieve(gateway_transaction_id),
        )
        failure = None
        last_error = getattr(intent, "last_payment_error", None)
        if last_error is not None:
            failure = getattr(last_error, "message", None) or getattr(last_error, "code", None)

        return GatewayVerification(
            succeeded=intent.status == "succeeded",
            status=intent.status,
            amount=from_minor_units(getattr(intent, "amount_received", None) or intent.amount),
            currency=(intent.currency or "").upper() or None,
            reference=(intent.metadata or {}).get("transaction_id"),
            failure_reason=failure if intent.status != "succeeded" else None,
        )

    def create_refund(
        self,
        *,
        gateway_transaction_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> GatewayRefund:
        params = {
            "payment_intent": gateway_transaction_id,
            "amount": to_minor_units(amount),
            "reason": "requested_by_customer",
            "metadata": {"reason": reason[:500]},
        }
        refund = self._call(
            "create_refund",
            lambda: self._client().v1.refunds.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            ),
        )
        logger.info(
            "stripe refund created",
            extra={
                "extra_fields": safe_log_context(
                    refund_id_prefix=id_prefix(refund.id),
                    status=refund.status,
                )
            },
        )
        return GatewayRefund(gateway_refund_id=refund.id, status=refund.status)

    def validate_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent:
        if not self._webhook_secret:
            logger.error("stripe webhook secret not configured - fail closed")
            raise SignatureInvalidError("webhook secret not configured")
        if not signature:
            raise SignatureInvalidError("missing signature")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            # Do NOT log signature or payload
            logger.warning("stripe webhook signature verification failed")
            raise SignatureInvalidError("invalid signature") from e
        except ValueError as e:
            logger.warning("stripe webhook payload parsing failed")
            raise SignatureInvalidError("invalid payload") from e

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise SignatureInvalidError("missing event id or type")

        return _to_gateway_event(event_id, event_type, event.get("data", {}).get("object", {}))

    def _call(self, operation: str, fn):
        try:
            return fn()
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            self._log_failure(operation, e, transient=True)
            raise GatewayUnavailableError(f"stripe {operation} unavailable") from e
        except stripe.APIError as e:
            self._log_failure(operation, e, transient=True)
            raise GatewayUnavailableError(f"stripe {operation} failed upstream") from e
        except stripe.StripeError as e:
            self._log_failure(operation, e, transient=False)
            raise GatewayError(f"stripe {operation} rejected: {e.user_message or e.code}") from e

    @staticmethod
    def _log_failure(operation: str, error: Exception, *, transient: bool) -> None:
        logger.warning(
            "stripe call failed",
            extra={
                "extra_fields": safe_log_context(
                    operation=operation,
                    error_type=type(error).__name__,
                    transient=transient,
                )
            },
        )


def _to_gateway_event(event_id: str, event_type: str, obj: dict[str, Any]) -> GatewayEvent:
    kind = _EVENT_KINDS.get(event_type, EventKind.UNHANDLED)

    if kind == EventKind.DISPUTE_CREATED:
        # Dispute objects reference the intent they contest
        return GatewayEvent(
            event_id=event_id,
            kind=kind,
            event_type=event_type,
            gateway_transaction_id=obj.get("payment_intent"),
            dispute_id=obj.get("id"),
            dispute_reason=obj.get("reason"),
        )

    failure = None
    if kind == EventKind.PAYMENT_FAILED:
        last_error = obj.get("last_payment_error") or {}
        failure = last_error.get("message") or last_error.get("code") or "payment failed"

    return GatewayEvent(
        event_id=event_id,
        kind=kind,
        event_type=event_type,
        gateway_transaction_id=obj.get("id"),
        failure_reason=failure,
    )
