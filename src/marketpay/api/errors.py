"""Domain error -> HTTP status mapping used by every route."""

from __future__ import annotations

from fastapi import HTTPException

from marketpay.domain.errors import (
    AuthorizationError,
    ConflictError,
    DuplicatePaymentError,
    GatewayError,
    GatewayUnavailableError,
    InvalidTransitionError,
    MarketpayError,
    NotFoundError,
    NotRefundableError,
    SignatureInvalidError,
    ValidationError,
    VerificationFailedError,
)
from marketpay.observability.correlation import get_correlation_id
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Most specific first: GatewayUnavailableError subclasses GatewayError
_STATUS_BY_ERROR: tuple[tuple[type[MarketpayError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (DuplicatePaymentError, 409),
    (NotRefundableError, 409),
    (VerificationFailedError, 402),
    (GatewayUnavailableError, 503),
    (GatewayError, 502),
    (SignatureInvalidError, 400),
)


def status_for(exc: MarketpayError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def http_error(exc: MarketpayError) -> HTTPException:
    """Translate a domain error into the HTTPException a route raises."""
    status = status_for(exc)
    logger.info(
        "request rejected",
        extra={
            "extra_fields": safe_log_context(
                correlationId=get_correlation_id(),
                error_type=type(exc).__name__,
                status=status,
            )
        },
    )
    if isinstance(exc, GatewayError):
        # Provider messages are not echoed to callers
        detail = "Payment gateway unavailable" if status == 503 else "Payment gateway error"
    else:
        detail = str(exc)
    return HTTPException(status_code=status, detail=detail)
