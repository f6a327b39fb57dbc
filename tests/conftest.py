"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- In-memory event publisher, fixed / straight-line distance providers
- Test data factories (users, rider presence, orders)
- API client with dependency overrides and bearer tokens
"""
# הגדרות סביבה לפני ייבוא app - הולידטור דורש מפתח כש-DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-paystack-secret")
os.environ.setdefault("MAPBOX_ACCESS_TOKEN", "")

import itertools
from datetime import datetime
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.services import (
    get_distance,
    get_job_lock,
    get_order_dispatch,
    get_publisher,
)
from app.core.auth import create_access_token
from app.core.config import settings
from app.core.exceptions import DistanceProviderError
from app.db.database import Base, get_db
from app.db.models.order import Location, Order, OrderStatus, ServiceType
from app.db.models.user import User, UserRole, VehicleType
from app.domain.services.distance_service import DistanceProvider, StraightLineDistanceProvider
from app.domain.services.event_publisher import InMemoryEventPublisher
from app.domain.services.order_service import OrderDraft, OrderService
from app.domain.services.payout_scheduler import InProcessJobLock
from app.domain.services.rider_directory import RiderDirectory
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


# ============================================================================
# Lagos points (inside the default service area)
# ============================================================================

IKEJA = Location("12 Allen Avenue, Ikeja", 6.6018, 3.3515)
YABA = Location("5 Herbert Macaulay Way, Yaba", 6.5095, 3.3711)
VICTORIA_ISLAND = Location("1 Adeola Odeku Street, Victoria Island", 6.4281, 3.4219)
# בערך 1.1 ק"מ מאיקג'ה
IKEJA_NEARBY = (6.6110, 3.3560)
# בערך 4.5 ק"מ מאיקג'ה
IKEJA_MID = (6.6400, 3.3620)
# מחוץ לאזור השירות (אבוג'ה)
ABUJA = Location("Central Business District, Abuja", 9.0579, 7.4951)


# ============================================================================
# Distance providers
# ============================================================================

class FixedDistanceProvider(DistanceProvider):
    """מחזיר מרחק קבוע - לתרחישי תמחור עם מרחק ידוע"""

    def __init__(self, km: float):
        self.km = km
        self.calls = 0

    async def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        self.calls += 1
        return self.km


class FailingDistanceProvider(DistanceProvider):
    """נכשל תמיד, או רק עבור נקודות מוצא מסוימות"""

    def __init__(self, fail_origins: Optional[set[tuple[float, float]]] = None):
        self.fail_origins = fail_origins
        self.calls = 0

    async def distance_km(self, lat1: float, lng1: float, lat2: float, lng2: float) -> float:
        self.calls += 1
        if self.fail_origins is None or (lat1, lng1) in self.fail_origins:
            raise DistanceProviderError("routing unavailable")
        return await StraightLineDistanceProvider(multiplier=1.0).distance_km(lat1, lng1, lat2, lng2)


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Collaborators
# ============================================================================

@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def distance_provider() -> DistanceProvider:
    """קו אווירי ללא מכפיל - מרחקים צפויים בבדיקות שיבוץ"""
    return StraightLineDistanceProvider(multiplier=1.0)


@pytest.fixture
def job_lock() -> InProcessJobLock:
    return InProcessJobLock()


@pytest.fixture
def order_service(db_session, publisher, distance_provider) -> OrderService:
    return OrderService(db_session, publisher=publisher, distance_provider=distance_provider)


# ============================================================================
# Test Data Factories
# ============================================================================

_phone_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        role: UserRole = UserRole.CUSTOMER,
        name: str = "Test User",
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        national_id: Optional[str] = None,
        vehicle_type: Optional[VehicleType] = None,
        supported_services: Optional[list[str]] = None,
        search_radius_km: Optional[float] = None,
        is_verified: Optional[bool] = None,
        is_active: bool = True,
    ) -> User:
        n = next(_phone_counter)
        is_rider = role == UserRole.RIDER
        user = User(
            role=role,
            name=name,
            email=email or f"user{n}@example.com",
            phone_number=phone_number or f"+23480{n:08d}",
            national_id=national_id,
            vehicle_type=vehicle_type or (VehicleType.MOTORBIKE if is_rider else None),
            supported_services=supported_services if supported_services is not None else (
                ["courier", "ride"] if is_rider else None
            ),
            search_radius_km=search_radius_km,
            is_verified=is_rider if is_verified is None else is_verified,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def go_online(db_session: AsyncSession):
    """Put a rider online at a point"""
    async def _go_online(rider: User, lat: float, lng: float):
        return await RiderDirectory(db_session).update_presence(rider, lat, lng, online=True)

    return _go_online


@pytest.fixture
def order_factory(order_service: OrderService):
    """Factory for creating pending orders through the service"""
    async def _create_order(
        customer: User,
        pickup: Location = IKEJA,
        dropoff: Location = YABA,
        service_type: ServiceType = ServiceType.COURIER,
        preferred_vehicle_type: Optional[str] = None,
        price: Optional[int] = 1300,
        use_wallet: bool = False,
    ) -> Order:
        return await order_service.create_order(customer, OrderDraft(
            pickup=pickup,
            dropoff=dropoff,
            service_type=service_type,
            preferred_vehicle_type=preferred_vehicle_type,
            price=price,
            use_wallet=use_wallet,
        ))

    return _create_order


@pytest.fixture
def deliver_order(order_service: OrderService):
    """Drive an order from pending to delivered via the status actions"""
    async def _deliver(order: Order, rider: User) -> Order:
        if order.status == OrderStatus.PENDING:
            await order_service.accept_order(rider, order.id)
        for action in ("pickup", "start", "deliver"):
            order = await order_service.update_status(rider, order.id, action)
        return order

    return _deliver


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def customer(user_factory) -> User:
    return await user_factory(role=UserRole.CUSTOMER, name="Ada Customer")


@pytest.fixture
async def rider(user_factory) -> User:
    return await user_factory(role=UserRole.RIDER, name="Tunde Rider")


@pytest.fixture
async def second_rider(user_factory) -> User:
    return await user_factory(role=UserRole.RIDER, name="Bola Rider")


@pytest.fixture
async def admin(user_factory) -> User:
    return await user_factory(role=UserRole.ADMIN, name="Ops Admin")


@pytest.fixture
def fixed_now() -> datetime:
    """יום רביעי באמצע שבוע - רחוק מגבולות השבוע"""
    return datetime(2024, 6, 12, 14, 30, 0)


# ============================================================================
# API client
# ============================================================================

def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(user.id, user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, publisher, distance_provider, job_lock):
    """Create test client with database and collaborator overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_distance] = lambda: distance_provider
    app.dependency_overrides[get_job_lock] = lambda: job_lock
    # ההפצה לרוכבים רצה אחרי התשובה, על אותה session, במקום דרך Celery
    app.dependency_overrides[get_order_dispatch] = lambda: OrderService(
        db_session, publisher=publisher, distance_provider=distance_provider
    ).dispatch_new_order

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self._lists: dict[str, list[str]] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def eval(self, script: str, numkeys: int, *args: str) -> int:
        """רק סקריפט השחרור של נעילת ה-scheduler: מחיקה אם הערך תואם"""
        key, token = args[0], args[numkeys]
        if self._store.get(key) == token:
            await self.delete(key)
            return 1
        return 0

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def lpush(self, key: str, value: str) -> int:
        self._lists.setdefault(key, []).insert(0, value)
        return len(self._lists[key])

    async def ltrim(self, key: str, start: int, end: int) -> None:
        self._lists[key] = self._lists.get(key, [])[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return self._lists.get(key, [])[start:end + 1]

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()
        self._lists.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.event_publisher.get_redis", _get_fake_redis), \
         patch("app.domain.services.payout_scheduler.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# JWT / webhook secrets
# ============================================================================

_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"
TEST_WEBHOOK_SECRET = "test-paystack-secret"


@pytest.fixture(autouse=True)
def set_secrets():
    """מגדיר סודות קבועים לבדיקות"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 480), \
         patch.object(settings, "PAYMENT_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET), \
         patch.object(settings, "MAPBOX_ACCESS_TOKEN", ""):
        yield
