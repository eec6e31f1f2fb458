"""
Pytest configuration and fixtures.

Database tests run against a throwaway SQLite directory per test (one file
for the tenant directory plus one attached file per tenant). Set
TEST_DATABASE_URL to a postgresql+asyncpg URL to run them against
PostgreSQL schemas instead.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from fleet_rental.config import Settings
from fleet_rental.database.connection import create_engine_from_settings, init_db
from fleet_rental.integrations.stripe_client import StripeError, StripeErrorType
from fleet_rental.schemas import BookingReceipt, CarRecord, CustomerRecord, TenantContext
from fleet_rental.service import RentalService

WEBHOOK_SECRET = "whsec_test_fake_secret"

BOOKING_START = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast tests without a database")
    config.addinivalue_line("markers", "integration: tests against a real database")
    config.addinivalue_line("markers", "race: concurrent access tests")


class FakeStripeClient:
    """
    In-memory stand-in for StripeClient.

    Honours idempotency keys the way Stripe does: a repeated key returns the
    first response without repeating the side effect.
    """

    def __init__(self) -> None:
        self.intents: Dict[str, MagicMock] = {}
        self.authorizations: Dict[str, MagicMock] = {}
        self.captures: Dict[str, Dict[str, Any]] = {}
        self.cancels: Dict[str, str] = {}
        self.capture_calls: List[str] = []
        self.lose_next_capture_response = False
        self.capture_error: Optional[StripeError] = None

    def _intent(self, intent_id: str, amount: int, status: str) -> MagicMock:
        intent = MagicMock()
        intent.id = intent_id
        intent.amount = amount
        intent.status = status
        intent.client_secret = f"{intent_id}_secret_test"
        return intent

    async def create_authorization(
        self, amount_cents: int, idempotency_key: str, metadata: Optional[Dict[str, str]] = None
    ) -> MagicMock:
        if idempotency_key in self.authorizations:
            return self.authorizations[idempotency_key]
        intent = self._intent(f"pi_test_{uuid.uuid4().hex[:16]}", amount_cents, "requires_payment_method")
        intent.metadata = metadata or {}
        self.intents[intent.id] = intent
        self.authorizations[idempotency_key] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> MagicMock:
        return self.intents[payment_intent_id]

    async def capture_payment_intent(
        self, payment_intent_id: str, amount_cents: int, idempotency_key: str
    ) -> MagicMock:
        self.capture_calls.append(idempotency_key)
        if self.capture_error is not None:
            raise self.capture_error

        intent = self.intents[payment_intent_id]
        if idempotency_key not in self.captures:
            self.captures[idempotency_key] = {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
            }
            intent.status = "succeeded"
            intent.amount_received = amount_cents
            if self.lose_next_capture_response:
                # Funds captured, response lost on the way back
                self.lose_next_capture_response = False
                raise StripeError("Connection reset", StripeErrorType.TRANSIENT)
        return intent

    async def cancel_payment_intent(self, payment_intent_id: str, idempotency_key: str) -> MagicMock:
        intent = self.intents[payment_intent_id]
        self.cancels[idempotency_key] = payment_intent_id
        intent.status = "canceled"
        return intent


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it answered."""

    def __init__(self, status_code: int = 200) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = status_code
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"received": True})


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_publishable_key="pk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=os.environ.get(
            "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}"
        ),
        sqlite_partition_dir=tmp_path / "partitions",
        database_lock_timeout_seconds=30.0,
        webhook_workers=2,
        webhook_timeout_seconds=2.0,
        app_name="fleet-rental-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with the tenant directory."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def webhook_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def service(
    test_settings: Settings,
    engine: AsyncEngine,
    fake_stripe: FakeStripeClient,
    webhook_transport: RecordingTransport,
) -> AsyncGenerator[RentalService, Any]:
    """Fully wired service with the processor and webhook endpoints faked."""
    service = RentalService(
        test_settings,
        engine=engine,
        stripe_client=fake_stripe,
        webhook_transport=webhook_transport,
    )
    yield service
    await service.notifier.stop(drain=False)


def unique_schema(prefix: str) -> str:
    """Partition name that does not collide across test runs."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def acme(service: RentalService) -> TenantContext:
    schema = unique_schema("acme")
    return await service.provisioner.provision(schema, schema.replace("_", "-"), schema, name="Acme")


@pytest_asyncio.fixture
async def globex(service: RentalService) -> TenantContext:
    schema = unique_schema("globex")
    return await service.provisioner.provision(schema, schema.replace("_", "-"), schema, name="Globex")


async def add_car(
    service: RentalService, tenant: TenantContext, daily_rate_cents: int = 10000
) -> CarRecord:
    return await service.assets.register_car(
        tenant,
        make="Toyota",
        model="Corolla",
        year=2022,
        license_plate=f"T-{uuid.uuid4().hex[:8].upper()}",
        daily_rate_cents=daily_rate_cents,
        odometer=12000,
    )


async def add_customer(service: RentalService, tenant: TenantContext) -> CustomerRecord:
    return await service.assets.register_customer(
        tenant,
        email=f"renter-{uuid.uuid4().hex[:8]}@example.com",
        first_name="Ada",
        last_name="Lovelace",
    )


async def book(
    service: RentalService,
    tenant: TenantContext,
    car: CarRecord,
    customer: CustomerRecord,
    days: float = 2,
    authorize: bool = True,
) -> BookingReceipt:
    """Create a booking (and by default its payment authorization)."""
    receipt = await service.bookings.create_booking(
        tenant,
        car.id,
        customer.id,
        BOOKING_START,
        BOOKING_START + timedelta(days=days),
    )
    if authorize:
        await service.payments.create_authorization(
            tenant, receipt.booking_id, int(days * car.daily_rate_cents) or 1
        )
    return receipt


@pytest_asyncio.fixture
async def car(service: RentalService, acme: TenantContext) -> CarRecord:
    return await add_car(service, acme)


@pytest_asyncio.fixture
async def customer(service: RentalService, acme: TenantContext) -> CustomerRecord:
    return await add_customer(service, acme)
