"""Shared pytest fixtures for marketpay tests."""
import sys
sys.dont_write_bytecode = True

from datetime import datetime, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from marketpay.domain.models import Actor, ActorRole, Gateway  # noqa: E402
from marketpay.gateways.registry import GatewayRegistry  # noqa: E402
from marketpay.infra.catalog import ServiceListing  # noqa: E402
from marketpay.services import booking_service, payment_service, reconciliation  # noqa: E402

from fakes import (  # noqa: E402
    PROVIDER_ID,
    REQUESTER_ID,
    SERVICE_ID,
    FakeCatalog,
    FakeClock,
    FakeGateway,
    InMemoryStore,
    RecordingNotifier,
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Pin configuration read at the use site so tests don't depend on the shell."""
    monkeypatch.setenv("BASE_CURRENCY", "NGN")
    monkeypatch.setenv("ESCROW_HOLD_HOURS", "72")
    monkeypatch.delenv("PAYMENT_MAX_ATTEMPTS", raising=False)
    monkeypatch.delenv("BOOKING_ALLOW_IN_PROGRESS_CANCEL", raising=False)
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(monkeypatch, clock):
    """In-memory persistence wired into every service module."""
    store = InMemoryStore()
    for module in (payment_service, booking_service, reconciliation):
        monkeypatch.setattr(module, "txn", store.txn)
        monkeypatch.setattr(module, "utc_now", clock)
        monkeypatch.setattr(module, "bookings_repository", store.bookings_repo)
        monkeypatch.setattr(module, "payments_repository", store.payments_repo)
    monkeypatch.setattr(reconciliation, "gateway_events_repository", store.events_repo)
    monkeypatch.setattr(booking_service, "advisory_xact_lock", store.advisory_xact_lock)
    return store


@pytest.fixture
def gateway():
    return FakeGateway("stripe")


@pytest.fixture
def registry(gateway):
    return GatewayRegistry(factories={}, adapters={Gateway.STRIPE: gateway})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog():
    catalog = FakeCatalog()
    catalog.add(
        ServiceListing(
            id=SERVICE_ID,
            provider_id=PROVIDER_ID,
            title="Deep clean",
            price=Decimal("100"),
            currency="NGN",
            duration_minutes=120,
        )
    )
    return catalog


@pytest.fixture
def requester():
    return Actor(id=REQUESTER_ID, role=ActorRole.REQUESTER)


@pytest.fixture
def provider():
    return Actor(id=PROVIDER_ID, role=ActorRole.PROVIDER)


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN)
