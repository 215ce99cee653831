"""Error taxonomy shared by the booking and payment workflows.

Non-recoverable errors (validation, authorization, invalid transition)
surface immediately. GatewayUnavailableError is transient and feeds retry
scheduling. SignatureInvalidError is a security failure: the event is
rejected and never applied.
"""

from __future__ import annotations


class MarketpayError(Exception):
    """Base class for all workflow errors."""


class ValidationError(MarketpayError):
    """Bad input, recoverable by the caller."""


class NotFoundError(MarketpayError):
    """Referenced booking, payment or service does not exist."""


class ConflictError(MarketpayError):
    """Request conflicts with existing state (e.g. provider already booked)."""


class AuthorizationError(MarketpayError):
    """Actor is not allowed to perform the operation."""


class InvalidTransitionError(MarketpayError):
    """Illegal state change attempted. Never silently coerced."""

    def __init__(self, entity: str, current: str, operation: str, detail: str | None = None) -> None:
        self.entity = entity
        self.current = current
        self.operation = operation
        message = f"{entity} in status '{current}' cannot {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BookingExpiredError(InvalidTransitionError):
    """Pending booking passed its expires_at before confirmation."""


class PaymentExpiredError(InvalidTransitionError):
    """Pending payment passed its expires_at before confirmation."""


class DuplicatePaymentError(MarketpayError):
    """Booking already has a pending, processing or completed payment."""


class NotRefundableError(MarketpayError):
    """Payment is not in a refundable state or nothing remains to refund."""


class VerificationFailedError(MarketpayError):
    """Gateway reports the transaction did not succeed."""


class GatewayError(MarketpayError):
    """Gateway rejected the request (non-transient)."""


class GatewayUnavailableError(GatewayError):
    """Transient gateway failure: timeout, connection error, 5xx, rate limit."""


class SignatureInvalidError(MarketpayError):
    """Webhook signature validation failed or gateway mismatch."""
