"""Pytest configuration and fixtures"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from instantphoto.config import settings
from instantphoto.db import models  # noqa: F401
from instantphoto.db.database import Base, get_db
from instantphoto.db.models import PhotographerAvailability, ResponseOutcome
from instantphoto.main import app
from instantphoto.schemas.photographers import LocationUpdate
from instantphoto.services.instant import InstantPhotoService
from instantphoto.services.locations import LocationRegistry
from instantphoto.services.notifications import InMemoryNotificationChannel
from instantphoto.services.payment_processor import SandboxPaymentProcessor

# Tuesday 2025-06-10, 12:00 in Tokyo: outside the night window, not a holiday
NOW = datetime(2025, 6, 10, 3, 0, tzinfo=timezone.utc)

GUEST_LAT = 35.6595
GUEST_LNG = 139.7005
# One degree of latitude on the haversine sphere
METERS_PER_DEGREE = 111_194.93

STANDARD_RATES = {"portrait": {"15": 3000, "30": 5000, "60": 9000}}


def request_payload(**overrides: Any) -> dict[str, Any]:
    """A valid guest request around the Shibuya test location"""
    data = {
        "guest_name": "Yuki Sato",
        "guest_phone": "+81 90-1234-5678",
        "guest_email": "yuki@photomail.jp",
        "party_size": 2,
        "latitude": GUEST_LAT,
        "longitude": GUEST_LNG,
        "location_landmark": "Hachiko statue",
        "request_type": "portrait",
        "urgency": "now",
        "duration": 15,
        "budget": 3000,
        "payment_method": "pm_card_visa",
    }
    data.update(overrides)
    return data


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings: no retry sleeps, no holidays, no external services"""
    monkeypatch.setattr(settings, "payment_retry_base_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "payment_retry_max_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "payment_max_attempts", 3)
    monkeypatch.setattr(settings, "holidays", [])
    monkeypatch.setattr(settings, "weekends_are_holidays", False)
    monkeypatch.setattr(settings, "enable_sms", False)
    monkeypatch.setattr(settings, "enable_payments", False)
    monkeypatch.setattr(settings, "enable_geocoding", False)
    monkeypatch.setattr(settings, "notification_backend", "memory")
    monkeypatch.setattr(settings, "dispatch_mode", "broadcast")
    monkeypatch.setattr(settings, "monthly_request_limit", 3)
    return settings


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'instantphoto.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor() -> SandboxPaymentProcessor:
    return SandboxPaymentProcessor()


@pytest.fixture
def channel() -> InMemoryNotificationChannel:
    return InMemoryNotificationChannel(buffer_size=10)


@pytest.fixture
def service(test_db, channel, processor) -> InstantPhotoService:
    return InstantPhotoService(test_db, channel, processor)


@pytest.fixture
def add_photographer(test_db):
    """Factory placing a photographer `distance_m` north of the guest"""

    async def _add(
        distance_m: float = 300.0,
        rates: dict[str, dict[str, int]] | None = None,
        radius_m: int = 2000,
        rating: float | None = None,
        avg_response_seconds: float | None = None,
        idle_since: datetime | None = None,
        **fields: Any,
    ) -> PhotographerAvailability:
        photographer_id = uuid.uuid4()
        update_data = LocationUpdate(
            latitude=GUEST_LAT + distance_m / METERS_PER_DEGREE,
            longitude=GUEST_LNG,
            display_name=fields.pop("display_name", f"Photographer {str(photographer_id)[:8]}"),
            response_radius_m=radius_m,
            instant_rates=rates if rates is not None else STANDARD_RATES,
            **fields,
        )
        registry = LocationRegistry(test_db)
        availability = await registry.upsert_location(
            photographer_id, update_data, current_time=idle_since or NOW - timedelta(hours=1)
        )
        if rating is not None or avg_response_seconds is not None:
            if rating is not None:
                availability.rating = rating
                availability.rating_count = 10
            availability.avg_response_seconds = avg_response_seconds
            await test_db.commit()
            availability = await registry.require(photographer_id)
        return availability

    return _add


@pytest.fixture
def matched_booking(service, add_photographer):
    """Factory running request -> accept; returns (RespondResult, photographer)"""

    async def _matched(at: datetime = NOW, distance_m: float = 300.0, **overrides: Any):
        photographer = await add_photographer(distance_m=distance_m)
        created = await service.create_request(request_payload(**overrides), current_time=at)
        result = await service.respond_to_offer(
            created.request_id,
            photographer.photographer_id,
            ResponseOutcome.ACCEPT,
            current_time=at + timedelta(seconds=30),
        )
        return result, photographer

    return _matched


@pytest.fixture
def in_progress_booking(service, matched_booking):
    """Factory for a booking the photographer has started"""

    async def _started(at: datetime = NOW, **overrides: Any):
        result, photographer = await matched_booking(at=at, **overrides)
        booking = await service.bookings.start(
            result.booking_id, photographer.photographer_id, current_time=at + timedelta(minutes=5)
        )
        return booking, photographer

    return _started


@pytest_asyncio.fixture
async def client(test_db, channel, processor) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with overridden database dependency"""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    # ASGITransport does not run the lifespan, so wire app.state by hand
    app.state.notification_channel = channel
    app.state.payment_processor = processor
    app.state.geocoder = None
    app.state.sms = None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_request_data():
    return request_payload
