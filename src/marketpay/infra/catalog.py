"""Service catalog collaborator.

The catalog (listings, providers, prices) is owned elsewhere; bookings only
read the authoritative price/duration at creation time and bump the
completed-bookings counter when a booking completes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from marketpay.infra.db import txn
from marketpay.observability.logging import get_logger
from marketpay.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class ServiceListing:
    id: str
    provider_id: str
    title: str
    price: Decimal
    currency: str
    duration_minutes: int
    is_active: bool = True


class ServiceCatalog(Protocol):
    def get_service(self, service_id: str) -> ServiceListing | None: ...

    def record_completed_booking(self, service_id: str) -> None: ...


class PostgresServiceCatalog:
    """Reads the `services` read model kept in sync by the catalog owner."""

    def get_service(self, service_id: str) -> ServiceListing | None:
        with txn() as cur:
            cur.execute(
                """
                SELECT id, provider_id, title, price, currency,
                       duration_minutes, is_active
                FROM services
                WHERE id = %s AND deleted_at IS NULL
                """,
                (service_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return ServiceListing(
            id=str(row[0]),
            provider_id=row[1],
            title=row[2],
            price=row[3],
            currency=row[4],
            duration_minutes=row[5],
            is_active=row[6],
        )

    def record_completed_booking(self, service_id: str) -> None:
        with txn() as cur:
            cur.execute(
                """
                UPDATE services
                SET completed_bookings = completed_bookings + 1, updated_at = now()
                WHERE id = %s
                """,
                (service_id,),
            )
        logger.info(
            "service completed counter incremented",
            extra={"extra_fields": safe_log_context(service_id=service_id)},
        )
