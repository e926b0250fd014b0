"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake Telegram transport and fake Redis
- Test data factories (executors, orders, channel binding)
"""
import itertools
import pytest
from typing import AsyncGenerator, Optional
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db
import app.db.models  # noqa: F401 - רישום כל הטבלאות ב-metadata
from app.db.models.channel_binding import ChannelBinding
from app.db.models.executor import Executor, ExecutorRole
from app.db.models.order import Order, OrderKind, OrderStatus
from app.core.config import settings
from app.core.exceptions import TelegramError
from app.domain.outcomes import ActorProfile
from app.domain.services.eligibility_service import format_executor_label
from app.domain.services.publication_service import announcement_registry, dismissal_registry
from app.domain.services.telegram_transport import get_transport
from app.domain.services.undo_service import undo_tracker
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-key"
DRIVERS_CHAT_ID = -1001234567890
CITY = "תל אביב"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


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
# Fake Telegram transport
# ============================================================================

class FakeTransport:
    """
    תחליף ל-TelegramTransport: רושם כל קריאה ומקצה message_id עולה.

    fail_send / fail_edit / fail_delete גורמים לקריאה המתאימה לזרוק
    TelegramError כמו ה-transport האמיתי.
    """

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.edited: list[dict] = []
        self.deleted: list[tuple] = []
        self.answers: list[dict] = []
        self.fail_send = False
        self.fail_edit = False
        self.fail_delete = False
        self._message_ids = itertools.count(1000)

    async def send_message(self, chat_id, text, keyboard=None) -> int:
        if self.fail_send:
            raise TelegramError("sendMessage failed", details={"operation": "sendMessage"})
        message_id = next(self._message_ids)
        self.sent.append({
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "keyboard": keyboard,
        })
        return message_id

    async def edit_message(self, chat_id, message_id, text, keyboard=None) -> None:
        if self.fail_edit:
            raise TelegramError("editMessageText failed", details={"operation": "editMessageText"})
        self.edited.append({
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "keyboard": keyboard,
        })

    async def delete_message(self, chat_id, message_id) -> None:
        if self.fail_delete:
            raise TelegramError("deleteMessage failed", details={"operation": "deleteMessage"})
        self.deleted.append((chat_id, message_id))

    async def answer_callback(self, callback_query_id, text=None, show_alert=False) -> None:
        self.answers.append({
            "callback_query_id": callback_query_id,
            "text": text,
            "show_alert": show_alert,
        })

    def sent_to(self, chat_id) -> list[dict]:
        return [message for message in self.sent if message["chat_id"] == chat_id]

    @staticmethod
    def callback_data(message: dict) -> list[str]:
        return [button.callback_data for row in (message["keyboard"] or []) for button in row]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_transport: FakeTransport):
    """Create test client with database and transport overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_transport] = lambda: fake_transport

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def executor_factory(db_session: AsyncSession):
    """Factory for creating executors (drivers / couriers)"""
    async def _create_executor(
        telegram_id: int,
        role: ExecutorRole = ExecutorRole.DRIVER,
        city: Optional[str] = CITY,
        verified_kinds: Optional[str] = None,
        name: Optional[str] = "Test Driver",
        username: Optional[str] = None,
        is_active: bool = True,
    ) -> Executor:
        executor = Executor(
            telegram_id=telegram_id,
            role=role,
            city=city,
            verified_kinds=role.value if verified_kinds is None else verified_kinds,
            name=name,
            username=username,
            is_active=is_active,
        )
        db_session.add(executor)
        await db_session.commit()
        await db_session.refresh(executor)
        return executor

    return _create_executor


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating orders directly in the store"""
    async def _create_order(
        kind: OrderKind = OrderKind.RIDE,
        city: str = CITY,
        status: OrderStatus = OrderStatus.OPEN,
        client_id: int = 555,
        claimed_by: Optional[int] = None,
        channel_message_id: Optional[int] = None,
        client_phone: Optional[str] = "+972501234567",
        notes: Optional[str] = None,
    ) -> Order:
        order = Order(
            kind=kind,
            city=city,
            status=status,
            pickup_query="הרצל 10",
            pickup_address="רחוב הרצל 10, תל אביב",
            pickup_lat=32.0853,
            pickup_lon=34.7818,
            dropoff_query="בן יהודה 50",
            dropoff_address="רחוב בן יהודה 50, תל אביב",
            dropoff_lat=32.0809,
            dropoff_lon=34.7688,
            price_amount=45,
            price_currency="ILS",
            distance_km=3.2,
            eta_minutes=12,
            client_id=client_id,
            client_phone=client_phone,
            notes=notes,
            claimed_by=claimed_by,
            channel_message_id=channel_message_id,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
async def drivers_channel(db_session: AsyncSession) -> int:
    """שיוך ערוץ הנהגים לצ'אט בדיקה"""
    db_session.add(ChannelBinding(channel="drivers", chat_id=DRIVERS_CHAT_ID))
    await db_session.commit()
    return DRIVERS_CHAT_ID


def make_actor(
    actor_id: int = 101,
    role: str = "driver",
    verified: Optional[set[str]] = None,
    city: Optional[str] = CITY,
    display_name: Optional[str] = None,
) -> ActorProfile:
    """ActorProfile ישיר, בלי טבלת executors"""
    return ActorProfile(
        actor_id=actor_id,
        role=role,
        verified_kinds=frozenset({role} if verified is None else verified),
        city=city,
        display_name=display_name or f"ID {actor_id}",
    )


def actor_from(executor: Executor) -> ActorProfile:
    return ActorProfile(
        actor_id=executor.telegram_id,
        role=executor.role.value,
        verified_kinds=executor.verified_roles,
        city=executor.city,
        display_name=format_executor_label(executor),
    )


# ============================================================================
# Process-local state reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_process_state():
    """חלונות ביטול, מטמון הודעות ודחיות הם state של התהליך - מאפסים בין בדיקות"""
    undo_tracker.clear()
    announcement_registry.reset()
    dismissal_registry.reset()
    yield
    undo_tracker.clear()
    announcement_registry.reset()
    dismissal_registry.reset()


class FakeClock:
    """שעון מונוטוני ידני לבדיקות TTL"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def undo_clock(monkeypatch) -> FakeClock:
    """מחליף את השעון של undo_tracker הגלובלי"""
    clock = FakeClock()
    monkeypatch.setattr(undo_tracker, "_clock", clock)
    return clock


# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

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

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.order_store.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def test_settings():
    """מפתח admin קבוע, webhook ללא אימות וערוץ ברירת מחדל ריק"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "TELEGRAM_WEBHOOK_SECRET_TOKEN", ""), \
         patch.object(settings, "DRIVERS_CHANNEL_ID", None), \
         patch.object(settings, "SINGLE_ACTIVE_ORDER_ROLES", "driver"):
        yield
