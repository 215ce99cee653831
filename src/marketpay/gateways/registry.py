"""Select the adapter for a provider, once, at the boundary."""

from __future__ import annotations

from typing import Callable

from marketpay.domain.errors import SignatureInvalidError, ValidationError
from marketpay.domain.models import Gateway
from marketpay.gateways.base import PaymentGateway
from marketpay.gateways.paystack import PaystackGateway
from marketpay.gateways.stripe import StripeGateway
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

GatewayFactory = Callable[[], PaymentGateway]

DEFAULT_FACTORIES: dict[Gateway, GatewayFactory] = {
    Gateway.STRIPE: StripeGateway,
    Gateway.PAYSTACK: PaystackGateway,
}


class GatewayRegistry:
    """Lazily builds and caches one adapter per provider.

    Adapters read their secrets from the environment on construction; a
    missing secret raises, so an unconfigured provider fails closed.
    """

    def __init__(
        self,
        factories: dict[Gateway, GatewayFactory] | None = None,
        adapters: dict[Gateway, PaymentGateway] | None = None,
    ) -> None:
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self._adapters: dict[Gateway, PaymentGateway] = dict(adapters or {})

    def get(self, gateway: Gateway | str) -> PaymentGateway:
        key = parse_gateway(gateway)
        adapter = self._adapters.get(key)
        if adapter is None:
            factory = self._factories.get(key)
            if factory is None:
                raise ValidationError(f"gateway '{key.value}' is not configured")
            adapter = factory()
            self._adapters[key] = adapter
        return adapter

    def for_webhook(self, gateway: str) -> PaymentGateway:
        """Adapter for an inbound webhook; any failure to resolve is a rejection."""
        try:
            return self.get(gateway)
        except (ValidationError, RuntimeError) as e:
            logger.warning(
                "webhook for unavailable gateway rejected",
                extra={"extra_fields": safe_log_context(gateway=gateway, reason=str(e))},
            )
            raise SignatureInvalidError(f"gateway '{gateway}' not accepted") from e


def parse_gateway(value: Gateway | str) -> Gateway:
    if isinstance(value, Gateway):
        return value
    try:
        return Gateway(str(value).lower())
    except ValueError as e:
        raise ValidationError(f"unsupported gateway '{value}'") from e
