"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Recording doubles for the realtime bridge and the push transport
- Fake Redis with Pub/Sub
- Test data factories (actors, establishments, deliveries)
"""
import os
os.environ.setdefault("INTAKE_WEBHOOK_TOKEN", "")

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from courier_hub.db.database import Base, get_db
from courier_hub.db.models.actor_profile import ActorProfile, ActorRole
from courier_hub.db.models.delivery import Delivery, DeliveryStatus
from courier_hub.db.models.establishment import Establishment
from courier_hub.domain.services.assignment_service import AssignmentService
from courier_hub.domain.services.intake_service import IntakeService
from courier_hub.domain.services.ledger_service import LedgerService
from courier_hub.domain.services.management_service import ManagementService
from courier_hub.domain.services.notification_service import NotificationDispatcher
from courier_hub.api.dependencies.services import get_push_transport, get_realtime_bridge
from courier_hub.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


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
# Transport doubles
# ============================================================================

class RecordingRealtimeBridge:
    """Keeps every published row change"""

    def __init__(self) -> None:
        self.changes = []

    async def publish(self, change) -> None:
        self.changes.append(change)

    def for_table(self, table: str) -> list:
        return [c for c in self.changes if c.table == table]


class RecordingPushTransport:
    """Keeps every notification handed to the transport"""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(self, recipient_ids, title, body, deep_link=None) -> None:
        self.sent.append({
            "recipient_ids": list(recipient_ids),
            "title": title,
            "body": body,
            "deep_link": deep_link,
        })


class FailingPushTransport:
    def send(self, recipient_ids, title, body, deep_link=None) -> None:
        raise ConnectionError("broker unreachable")


@pytest.fixture
def realtime() -> RecordingRealtimeBridge:
    return RecordingRealtimeBridge()


@pytest.fixture
def push_transport() -> RecordingPushTransport:
    return RecordingPushTransport()


@pytest.fixture
def notifications(db_session: AsyncSession, push_transport) -> NotificationDispatcher:
    return NotificationDispatcher(db_session, transport=push_transport)


@pytest.fixture
def assignment_service(db_session, realtime, notifications) -> AssignmentService:
    return AssignmentService(db_session, realtime=realtime, notifications=notifications)


@pytest.fixture
def intake_service(db_session, realtime, notifications, assignment_service) -> IntakeService:
    return IntakeService(
        db_session,
        engine=assignment_service,
        notifications=notifications,
        realtime=realtime,
    )


@pytest.fixture
def ledger_service(db_session) -> LedgerService:
    return LedgerService(db_session)


@pytest.fixture
def management_service(db_session, realtime) -> ManagementService:
    return ManagementService(db_session, realtime=realtime)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, realtime, push_transport):
    """Create test client with database and transport overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_realtime_bridge] = lambda: realtime
    app.dependency_overrides[get_push_transport] = lambda: push_transport

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake Redis
# ============================================================================

class FakePubSub:
    """Replays messages queued on the fake server for subscribed channels"""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        self.channels.update(channels)

    async def unsubscribe(self, *channels: str) -> None:
        self.channels.difference_update(channels)

    async def listen(self):
        for channel in sorted(self.channels):
            yield {"type": "subscribe", "channel": channel, "data": 1}
        for channel, data in list(self._redis.published):
            if channel in self.channels:
                yield {"type": "message", "channel": channel, "data": data}

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """In-memory Redis replacement with Pub/Sub recording"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []
        self.pubsubs: list[FakePubSub] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("courier_hub.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def actor_factory(db_session: AsyncSession):
    """Factory for dispatcher and courier profiles"""
    async def _create_actor(
        name: str = "Test Courier",
        role: ActorRole = ActorRole.COURIER,
        available: bool = True,
        commission_percent: Decimal = Decimal("20"),
        commission_fixed: Decimal = Decimal("0"),
        push_token: str | None = None,
        email: str | None = None,
    ) -> ActorProfile:
        actor = ActorProfile(
            name=name,
            role=role,
            available=available,
            commission_percent=commission_percent,
            commission_fixed=commission_fixed,
            push_token=push_token,
            email=email,
        )
        db_session.add(actor)
        await db_session.commit()
        await db_session.refresh(actor)
        return actor

    return _create_actor


@pytest.fixture
def establishment_factory(db_session: AsyncSession):
    """Factory for establishments with an optional request queue"""
    async def _create_establishment(
        name: str = "Drogasil",
        collection_address: str | None = "Av. Paulista, 1000",
        neighborhood: str | None = "Bela Vista",
        request_queue: list | None = None,
    ) -> Establishment:
        establishment = Establishment(
            name=name,
            collection_address=collection_address,
            neighborhood=neighborhood,
            request_queue=list(request_queue or []),
            queue_version=0,
        )
        db_session.add(establishment)
        await db_session.commit()
        await db_session.refresh(establishment)
        return establishment

    return _create_establishment


@pytest.fixture
def delivery_factory(db_session: AsyncSession):
    """Factory for persisted deliveries"""
    async def _create_delivery(
        establishment_id: int,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        total_value: Decimal = Decimal("20.00"),
        courier_id: int | None = None,
        courier_payout: Decimal | None = None,
        operator_profit: Decimal | None = None,
        operator_fulfilled: bool = False,
        customer_name: str | None = "Maria Souza",
        note: str | None = None,
        completed_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> Delivery:
        delivery = Delivery(
            establishment_id=establishment_id,
            status=status,
            total_value=total_value,
            courier_id=courier_id,
            courier_payout=courier_payout,
            operator_profit=operator_profit,
            operator_fulfilled=operator_fulfilled,
            customer_name=customer_name,
            destination_address=["Rua Augusta, 500"],
            note=note,
            completed_at=completed_at,
            version=1,
        )
        if created_at is not None:
            delivery.created_at = created_at
        db_session.add(delivery)
        await db_session.commit()
        await db_session.refresh(delivery)
        return delivery

    return _create_delivery


# ============================================================================
# Sample Test Data
# ============================================================================

DROGASIL_REQUEST = {
    "_slot_id": "slot-drogasil-1",
    "nome": "Ana Lima",
    "telefone": "11999990000",
    "endereco": {"rua": "Rua Augusta", "numero": "500", "bairro": "Consolação", "cidade": "São Paulo"},
    "valor_frete": "20,00",
}


@pytest.fixture
async def dispatcher(actor_factory) -> ActorProfile:
    return await actor_factory(name="Dispatcher", role=ActorRole.DISPATCHER, available=False)


@pytest.fixture
async def courier_x(actor_factory) -> ActorProfile:
    return await actor_factory(name="Courier X")


@pytest.fixture
async def courier_y(actor_factory) -> ActorProfile:
    return await actor_factory(name="Courier Y")


@pytest.fixture
async def drogasil(establishment_factory) -> Establishment:
    return await establishment_factory(name="Drogasil", request_queue=[dict(DROGASIL_REQUEST)])
