"""
Shared fixtures: a throwaway SQLite database per test, a scripted payment
processor and an in-memory event publisher.
"""
import os

# Must be set before carpool.config is first imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PSP_API_KEY", "")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import carpool.models  # noqa: F401  (registers tables on Base.metadata)
from carpool.database import Base
from carpool.errors import PaymentProcessorUnavailable
from carpool.schemas.schemas import DriverPostingCreate
from carpool.services.orchestrator import RideOrchestrator

DRIVER = "driver-001"
PASSENGERS = ["passenger-001", "passenger-002", "passenger-003"]
NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakePaymentProcessor:
    """
    Records every PSP call. Idempotent by key like a real PSP: the same key
    returns the first result. Set a `fail_*` flag to make that operation raise.
    """

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []
        self.results: dict[str, str] = {}
        self.fail_authorize = False
        self.fail_capture = False
        self.fail_refund = False
        self.fail_charge = False
        self.on_capture = None   # async hook run while a capture is "in flight"

    def _result(self, key: str, prefix: str) -> str:
        if key not in self.results:
            self.results[key] = f"{prefix}_{uuid.uuid4().hex[:12]}"
        return self.results[key]

    def operations(self, op: str) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] == op]

    async def authorize(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str:
        self.calls.append(("authorize", str(amount), idempotency_key))
        if self.fail_authorize:
            raise PaymentProcessorUnavailable("authorize failed")
        return self._result(idempotency_key, "pi")

    async def capture(self, authorization_id: str, idempotency_key: str) -> str:
        self.calls.append(("capture", authorization_id, idempotency_key))
        if self.on_capture is not None:
            hook, self.on_capture = self.on_capture, None
            await hook()
        if self.fail_capture:
            raise PaymentProcessorUnavailable("capture failed")
        return self._result(idempotency_key, "ch")

    async def refund(self, reference: str, idempotency_key: str) -> str:
        self.calls.append(("refund", reference, idempotency_key))
        if self.fail_refund:
            raise PaymentProcessorUnavailable("refund failed")
        return self._result(idempotency_key, "re")

    async def charge_separate(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str:
        self.calls.append(("charge", str(amount), idempotency_key))
        if self.fail_charge:
            raise PaymentProcessorUnavailable("charge failed")
        return self._result(idempotency_key, "ch")


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, events) -> None:
        self.events.extend(events)

    def types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'carpool.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def orchestrator(session_factory, processor, publisher):
    return RideOrchestrator(session_factory, processor, publisher)


def posting(
    departure: datetime | None = None,
    seats: int = 3,
    price: str = "30.00",
    payment_token: str | None = "tok_driver",
) -> DriverPostingCreate:
    departure = departure or NOW + timedelta(days=5)
    return DriverPostingCreate(
        origin="Ashford Library",
        origin_area="Ashford",
        destination="Central Station",
        destination_area="Downtown",
        departure_time=departure,
        arrival_time=departure + timedelta(hours=1),
        price=Decimal(price),
        seats_total=seats,
        car_model="Corolla",
        payment_token=payment_token,
    )


@pytest_asyncio.fixture
async def open_ride(orchestrator):
    """A three-seat $30 ride departing five days after NOW."""
    return await orchestrator.post_ride(DRIVER, posting())


async def approved_request(orchestrator, ride_id: str, passenger_id: str):
    request = await orchestrator.submit_request(ride_id, passenger_id, f"tok_{passenger_id}", now=NOW)
    return await orchestrator.approve_request(request.id, DRIVER)
