"""Worker routes for payment tasks.

POST /tasks/payments/retry-due - re-verify failed payments whose retry is
due. Called by an external scheduler; requires task authentication.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from marketpay.api.task_auth import verify_task_auth
from marketpay.gateways.registry import GatewayRegistry
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context
from marketpay.services import payment_service
from marketpay.services.notifications import Notifier, build_notifier

router = APIRouter(prefix="/tasks/payments", tags=["tasks"])

logger = get_logger(__name__)

MAX_BATCH = 200

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


@router.post("/retry-due")
async def retry_due(request: Request) -> dict:
    """Run one retry sweep.

    Optional JSON body: {"limit": int} (1..200, default 50).

    Returns:
        Counts of due, completed, failed and skipped payments.
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    limit = 50
    body = await request.body()
    if body:
        try:
            payload: dict[str, Any] = await request.json()
            limit = int(payload.get("limit", limit))
        except (ValueError, TypeError, AttributeError):
            raise HTTPException(status_code=400, detail="invalid json") from None
    if not 1 <= limit <= MAX_BATCH:
        raise HTTPException(status_code=400, detail=f"limit must be between 1 and {MAX_BATCH}")

    counts = payment_service.retry_due_payments(
        gateways=_get_gateway_registry(),
        notifier=_get_notifier(),
        limit=limit,
    )
    return {"status": "ok", **counts}
