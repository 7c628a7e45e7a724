"""Shared fixtures: in-memory database sessions and dispatcher fakes."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pricewatch.db.models import AutoBuySetting, Base, Watch, WatchStatus
from pricewatch.notify.dispatchers import DispatchResult, PurchaseResult, TransientDispatchError


class FakeNotificationDispatcher:
    """Records every message; methods listed in failing report failure."""

    def __init__(self, failing=(), raising=()):
        self.sent = []
        self.failing = set(failing)
        self.raising = set(raising)

    async def send(self, message):
        self.sent.append(message)
        if message.method in self.raising:
            raise TransientDispatchError(f"{message.method} unreachable")
        if message.method in self.failing:
            return DispatchResult(success=False, error=f"{message.method} rejected")
        return DispatchResult(success=True)

    def kinds(self):
        return [m.kind for m in self.sent]


class FakePaymentDispatcher:
    """Replays queued purchase results, failing once the queue is empty."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    async def purchase(self, watch_id, price, payment_reference):
        self.calls.append((watch_id, price, payment_reference))
        if self.results:
            return self.results.pop(0)
        return PurchaseResult(success=False, error="card declined")


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a file database so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricewatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def notification_dispatcher():
    return FakeNotificationDispatcher()


@pytest.fixture
def payment_dispatcher():
    return FakePaymentDispatcher()


async def create_watch(
    db: AsyncSession,
    target_price="500.00",
    status=WatchStatus.ACTIVE,
    route="LAX-FLR",
    travel_date=None,
    methods=("email",),
    auto_buy=None,
    **fields,
) -> Watch:
    """
    Insert a watch and return it freshly loaded with its relationships.

    Args:
        auto_buy: Optional dict of AutoBuySetting fields
    """
    watch = Watch(
        owner_id=fields.pop("owner_id", 1),
        route=route,
        travel_date=travel_date or (date.today() + timedelta(days=90)),
        target_price=Decimal(target_price),
        notification_methods=list(methods),
        status=status,
        **fields,
    )
    if auto_buy is not None:
        watch.auto_buy = AutoBuySetting(**auto_buy)
    db.add(watch)
    await db.commit()

    watch_id = watch.id
    db.expunge_all()
    return await db.get(Watch, watch_id)


@pytest.fixture
def make_watch():
    return create_watch
