"""Gateway webhook endpoint - public, authenticated by provider signature.

Security rules:
- Validate the provider signature on every request.
- Never log payload or signature header.
- 2xx for every authenticated event, including no-ops.
- 5xx only when our own processing failed (so the provider retries).
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from marketpay.domain.errors import SignatureInvalidError
from marketpay.gateways.registry import GatewayRegistry
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context
from marketpay.services.notifications import Notifier, build_notifier
from marketpay.services.reconciliation import handle_gateway_webhook

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

_SIGNATURE_HEADERS = ("Stripe-Signature", "X-Paystack-Signature")

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


def _signature_from(request: Request) -> str:
    for header in _SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return ""


@router.post("/webhooks/{gateway}")
async def gateway_webhook(gateway: str, request: Request) -> Response:
    """Receive a payment gateway event.

    Returns:
        200 with the reconciliation outcome for any authenticated event.
        400 if the gateway is unknown or the signature is invalid.
        500 if processing failed (receipt rolled back, provider retries).
    """
    correlation_id = get_correlation_id()
    payload_bytes = await request.body()
    signature = _signature_from(request)

    try:
        ack = handle_gateway_webhook(
            gateway,
            payload_bytes,
            signature,
            gateways=_get_gateway_registry(),
            notifier=_get_notifier(),
        )
    except SignatureInvalidError:
        logger.warning(
            "webhook rejected",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, gateway=gateway)},
        )
        return Response(status_code=400, content="invalid signature")
    except Exception:
        logger.exception(
            "webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, gateway=gateway)},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse({"received": True, "outcome": ack.outcome})
