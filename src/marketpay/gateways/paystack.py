"""Paystack adapter over its REST API (requests).

Our transaction id doubles as the Paystack reference, so verification and
webhooks resolve payments by reference. Webhooks are authenticated with an
HMAC-SHA512 of the raw body keyed by the secret key.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from decimal import Decimal
from typing import Any

import requests

from marketpay.domain.errors import (
    GatewayError,
    GatewayUnavailableError,
    SignatureInvalidError,
    ValidationError,
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
from marketpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"

_EVENT_KINDS = {
    "charge.success": EventKind.PAYMENT_SUCCEEDED,
    "charge.failed": EventKind.PAYMENT_FAILED,
    "charge.dispute.create": EventKind.DISPUTE_CREATED,
    "charge.dispute.created": EventKind.DISPUTE_CREATED,
}


class PaystackGateway:
    """PaymentGateway backed by the Paystack REST API."""

    name = "paystack"

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._secret_key = secret_key or os.environ.get("PAYSTACK_SECRET_KEY")
        if not self._secret_key:
            raise RuntimeError(
                "Paystack secret key not provided. "
                "Set PAYSTACK_SECRET_KEY or pass secret_key parameter."
            )
        self._base_url = (base_url or os.environ.get("PAYSTACK_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout or float(os.environ.get("GATEWAY_HTTP_TIMEOUT", "15"))
        self._session = session or requests.Session()

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
        # Paystack dedupes on reference; idempotency_key is not sent
        if not email:
            raise ValidationError("paystack requires a payer email")

        body: dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "reference": reference,
            "metadata": metadata or {},
        }
        callback_url = os.environ.get("PAYSTACK_CALLBACK_URL")
        if callback_url:
            body["callback_url"] = callback_url

        data = self._request("POST", "/transaction/initialize", "create_intent", json_body=body)

        logger.info(
            "paystack transaction initialized",
            extra={"extra_fields": safe_log_context(transaction_id=reference)},
        )
        return GatewayIntent(
            gateway_transaction_id=data.get("reference") or reference,
            reference=data.get("access_code") or reference,
            authorization_url=data.get("authorization_url"),
        )

    def verify_transaction(self, gateway_transaction_id: str) -> GatewayVerification:
        data = self._request(
            "GET",
            f"/transaction/verify/{gateway_transaction_id}",
            "verify_transaction",
        )
        status = data.get("status") or "unknown"
        succeeded = status == "success"
        return GatewayVerification(
            succeeded=succeeded,
            status=status,
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            reference=data.get("reference"),
            failure_reason=None if succeeded else (data.get("gateway_response") or status),
        )

    def create_refund(
        self,
        *,
        gateway_transaction_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> GatewayRefund:
        body = {
            "transaction": gateway_transaction_id,
            "amount": to_minor_units(amount),
            "customer_note": reason,
            "merchant_note": idempotency_key,
        }
        data = self._request("POST", "/refund", "create_refund", json_body=body)
        refund_id = str(data.get("id", ""))
        logger.info(
            "paystack refund created",
            extra={"extra_fields": safe_log_context(refund_id=refund_id, status=data.get("status"))},
        )
        return GatewayRefund(gateway_refund_id=refund_id, status=data.get("status") or "pending")

    def validate_webhook_signature(self, payload: bytes, signature: str) -> GatewayEvent:
        if not signature:
            raise SignatureInvalidError("missing signature")

        expected = hmac.new(self._secret_key.encode(), payload, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            # Do NOT log signature or payload
            logger.warning("paystack webhook signature verification failed")
            raise SignatureInvalidError("invalid signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.warning("paystack webhook payload parsing failed")
            raise SignatureInvalidError("invalid payload") from e
        if not isinstance(event, dict):
            raise SignatureInvalidError("invalid payload")

        event_type = event.get("event") or ""
        data = event.get("data") or {}
        if not event_type:
            raise SignatureInvalidError("missing event type")
        return _to_gateway_event(event_type, data)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self._session.request(
                method,
                f"{self._base_url}{path}",
                json=json_body,
                headers=headers,
                timeout=self._timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            _log_failure(operation, type(e).__name__, transient=True)
            raise GatewayUnavailableError(f"paystack {operation} unavailable") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            _log_failure(operation, f"http_{resp.status_code}", transient=True)
            raise GatewayUnavailableError(f"paystack {operation} failed upstream")

        try:
            body = resp.json()
        except ValueError as e:
            _log_failure(operation, "invalid_json", transient=False)
            raise GatewayError(f"paystack {operation} returned invalid json") from e

        if not resp.ok or not body.get("status"):
            _log_failure(operation, f"http_{resp.status_code}", transient=False)
            raise GatewayError(f"paystack {operation} rejected: {body.get('message', 'unknown error')}")
        return body.get("data") or {}


def _log_failure(operation: str, error: str, *, transient: bool) -> None:
    logger.warning(
        "paystack call failed",
        extra={
            "extra_fields": safe_log_context(
                operation=operation,
                error_type=error,
                transient=transient,
            )
        },
    )


def _to_gateway_event(event_type: str, data: dict[str, Any]) -> GatewayEvent:
    kind = _EVENT_KINDS.get(event_type, EventKind.UNHANDLED)
    # Paystack events carry no envelope id; event type + object id is unique per delivery target
    event_id = f"{event_type}:{data.get('id', data.get('reference', ''))}"

    if kind == EventKind.DISPUTE_CREATED:
        transaction = data.get("transaction") or {}
        return GatewayEvent(
            event_id=event_id,
            kind=kind,
            event_type=event_type,
            gateway_transaction_id=transaction.get("reference"),
            dispute_id=str(data["id"]) if data.get("id") is not None else None,
            dispute_reason=data.get("reason") or data.get("category"),
        )

    return GatewayEvent(
        event_id=event_id,
        kind=kind,
        event_type=event_type,
        gateway_transaction_id=data.get("reference"),
        failure_reason=data.get("gateway_response") if kind == EventKind.PAYMENT_FAILED else None,
    )
