import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("BOOKING_DB", "sqlite+aiosqlite:///./booking-test.db")

import pytest
from sqlalchemy import select

from shared.database import Base, get_engine, get_session

from booking_service.config import Settings
from booking_service.core import BookingCore
from booking_service.errors import ExternalServiceError
from booking_service.models import Booking, JobRequest
from booking_service.status import (
    ASSIGNED_STATUSES,
    MATCHING_PHASE,
    BookingStatus,
    JobRequestStatus,
    PaymentStatus,
)

# Monday, 10:00 UTC
START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

ORIGIN = (52.5200, 13.4050)


def offset(km_north: float) -> tuple[float, float]:
    """A point roughly ``km_north`` kilometres north of ORIGIN."""
    return ORIGIN[0] + km_north / 111.195, ORIGIN[1]


def provider_record(provider_id: str, km: float, rating: float = 4.5, **extra) -> dict:
    lat, lon = offset(km)
    record = {
        "id": provider_id,
        "latitude": lat,
        "longitude": lon,
        "rating": rating,
        "last_accept_time": None,
        "available": True,
        "service_ids": ["plumbing"],
        "blackouts": [],
    }
    record.update(extra)
    return record


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeDirectory:
    def __init__(self, providers=None):
        self.providers = list(providers or [])
        self.error = None
        self.calls = 0

    async def list_providers(self, service_id: str) -> list[dict]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.providers)


class FakeCatalog:
    def __init__(self):
        self.services = {}

    async def get_service(self, service_id: str) -> dict:
        return self.services.get(service_id, {})


class FakeGateway:
    def __init__(self):
        self.captures = []
        self.refunds = []
        self.fail_captures = 0
        self.fail_refunds = 0

    async def capture(self, amount, customer_ref, idempotency_key):
        self.captures.append((amount, customer_ref, idempotency_key))
        if self.fail_captures:
            self.fail_captures -= 1
            raise ExternalServiceError("gateway down", reason="payment_gateway_error")
        return f"cap-{idempotency_key[:8]}"

    async def refund(self, payment_ref, amount, reason, idempotency_key):
        self.refunds.append((payment_ref, amount, reason, idempotency_key))
        if self.fail_refunds:
            self.fail_refunds -= 1
            raise ExternalServiceError("gateway down", reason="payment_gateway_error")
        return f"ref-{idempotency_key[:8]}"


class FakePublisher:
    enabled = True

    def __init__(self):
        self.published = []

    async def connect(self):
        pass

    async def publish(self, routing_key: str, message_body: str):
        self.published.append((routing_key, json.loads(message_body)))

    async def close(self):
        pass

    def events(self, routing_key: str) -> list[dict]:
        return [body for key, body in self.published if key == routing_key]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://")


@pytest.fixture
async def session_factory(anyio_backend, tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield get_session(engine)
    await engine.dispose()


@pytest.fixture
async def core(anyio_backend, settings, session_factory, directory, catalog, gateway, publisher, clock):
    core = BookingCore(
        settings,
        session_factory,
        directory=directory,
        catalog=catalog,
        gateway=gateway,
        publisher=publisher,
        clock=clock,
    )
    yield core
    await core.notifier.drain()


@pytest.fixture
def seed(session_factory, clock):
    """Insert a booking directly in the given status."""

    async def _seed(status: BookingStatus = BookingStatus.MATCHED, **overrides) -> Booking:
        now = clock()
        values = dict(
            id=str(uuid.uuid4()),
            customer_id="cust-1",
            service_id="plumbing",
            status=status,
            created_at=now,
            updated_at=now,
            scheduled_at=None,
            total_amount=Decimal("100.00"),
            refund_amount=Decimal("0"),
            payment_status=PaymentStatus.CAPTURED,
            payment_reference_id="cap-seed",
            customer_ref="cust-1",
            latitude=ORIGIN[0],
            longitude=ORIGIN[1],
            urgency="normal",
            search_radius_km=15.0,
            search_wave=0,
            needs_manual_review=False,
            automation_halted=False,
        )
        if status in ASSIGNED_STATUSES:
            values["provider_id"] = "prov-1"
            values["accepted_at"] = now
        if status in MATCHING_PHASE:
            values["matching_expires_at"] = now + timedelta(seconds=300)
        if status is BookingStatus.MATCHED:
            values["search_wave"] = 1
            values["accept_deadline_at"] = now + timedelta(seconds=120)
        if status is BookingStatus.WORK_COMPLETED:
            values["work_completed_at"] = now
        values.update(overrides)

        booking = Booking(**values)
        async with session_factory() as session:
            session.add(booking)
            await session.commit()
        return booking

    return _seed


@pytest.fixture
def seed_offer(session_factory, clock):
    async def _seed_offer(
        booking_id: str,
        provider_id: str,
        expires_in: float = 120,
        status: JobRequestStatus = JobRequestStatus.SENT,
        wave: int = 1,
    ) -> JobRequest:
        now = clock()
        job_request = JobRequest(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            provider_id=provider_id,
            status=status,
            wave=wave,
            priority=3,
            sent_at=now,
            expires_at=now + timedelta(seconds=expires_in),
            distance_km=1.0,
            quoted_price=Decimal("100.00"),
        )
        async with session_factory() as session:
            session.add(job_request)
            await session.commit()
        return job_request

    return _seed_offer


@pytest.fixture
def job_requests_of(session_factory):
    async def _list(booking_id: str) -> list[JobRequest]:
        async with session_factory() as session:
            res = await session.execute(select(JobRequest).where(JobRequest.booking_id == booking_id))
            return list(res.scalars())

    return _list
