"""Tests for the background sweeps."""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from pricewatch.db.models import PriceObservation, TriggerEvent, Watch, WatchStatus
from pricewatch.detect.analytics import PriceAnalytics
from pricewatch.detect.engine import AlertEvaluator, EvaluationOutcome, EvaluationResult
from pricewatch.detect.quality import QualityScorer
from pricewatch.ingest.base import RawProviderRecord
from pricewatch.ingest.observation_store import PriceObservationStore
from pricewatch.notify.formatters import MessageKind
from pricewatch.notify.notifier import Notifier
from pricewatch.worker.check_scheduler import CheckScheduler
from pricewatch.worker.tasks import TaskRunner


class FakeLockManager:
    """In-memory stand-in for the Redis watch lock."""

    def __init__(self):
        self.held = {}
        self.acquired = []

    async def acquire(self, watch_id, ttl_seconds=None):
        if watch_id in self.held:
            return None
        token = f"token-{watch_id}"
        self.held[watch_id] = token
        self.acquired.append(watch_id)
        return token

    async def release(self, watch_id, token):
        return self.held.pop(watch_id, None) == token

    async def close(self):
        pass


class ExplodingEvaluator:
    async def evaluate(self, db, watch):
        raise RuntimeError("provider lookup blew up")


class BlockingEvaluator:
    """Holds every evaluation until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.started = []

    async def evaluate(self, db, watch):
        self.started.append(watch.id)
        await self.release.wait()
        return EvaluationResult(watch_id=watch.id, outcome=EvaluationOutcome.NO_MATCH)


@pytest.fixture
def store():
    return PriceObservationStore()


@pytest.fixture
def lock_manager():
    return FakeLockManager()


@pytest.fixture
def scheduler():
    return CheckScheduler(
        urgency_window=timedelta(days=30),
        triggered_interval=timedelta(minutes=30),
        urgent_interval=timedelta(hours=1),
        default_interval=timedelta(hours=6),
        jitter_ratio=0,
    )


@pytest.fixture
def evaluator(notification_dispatcher, payment_dispatcher, store):
    return AlertEvaluator(
        notifier=Notifier(dispatcher=notification_dispatcher, timeout=1),
        payment_dispatcher=payment_dispatcher,
        store=store,
        analytics=PriceAnalytics(),
        payment_timeout=1,
    )


@pytest.fixture
def runner_factory(session_factory, lock_manager, scheduler, store, evaluator):
    def build(**overrides):
        options = {
            "session_factory": session_factory,
            "evaluator": evaluator,
            "lock_manager": lock_manager,
            "scheduler": scheduler,
            "store": store,
            "scorer": QualityScorer(),
            "max_concurrency": 1,
            "batch_size": 50,
        }
        options.update(overrides)
        return TaskRunner(**options)

    return build


async def load_watch(session_factory, watch_id):
    async with session_factory() as db:
        return await db.get(Watch, watch_id)


@pytest.mark.asyncio
async def test_evaluate_watch_reschedules_and_releases_lock(
    session_factory, make_watch, runner_factory, lock_manager
):
    async with session_factory() as db:
        watch = await make_watch(db)
    runner = runner_factory()
    before = datetime.utcnow()

    result = await runner.evaluate_watch(watch.id)

    assert result.outcome == EvaluationOutcome.NO_PRICE
    assert lock_manager.held == {}
    reloaded = await load_watch(session_factory, watch.id)
    assert reloaded.last_checked_at >= before
    assert reloaded.next_check_at - reloaded.last_checked_at == timedelta(hours=6)


@pytest.mark.asyncio
async def test_triggered_watch_is_rescheduled_sooner(
    session_factory, make_watch, runner_factory, store, notification_dispatcher
):
    async with session_factory() as db:
        watch = await make_watch(db)
        await store.record_observation(db, watch.route, watch.travel_date, "kayak", "430")
    runner = runner_factory()

    result = await runner.evaluate_watch(watch.id)

    assert result.outcome == EvaluationOutcome.TRIGGERED
    assert notification_dispatcher.kinds() == [MessageKind.PRICE_DROP]
    reloaded = await load_watch(session_factory, watch.id)
    assert reloaded.status == WatchStatus.TRIGGERED
    assert reloaded.next_check_at - reloaded.last_checked_at == timedelta(minutes=30)


@pytest.mark.asyncio
async def test_failed_evaluation_is_still_rescheduled(
    session_factory, make_watch, runner_factory, lock_manager
):
    async with session_factory() as db:
        watch = await make_watch(db)
    runner = runner_factory(evaluator=ExplodingEvaluator())

    assert await runner.evaluate_watch(watch.id) is None

    assert lock_manager.held == {}
    reloaded = await load_watch(session_factory, watch.id)
    assert reloaded.next_check_at is not None
    assert reloaded.status == WatchStatus.ACTIVE


@pytest.mark.asyncio
async def test_locked_or_unmonitored_watches_are_skipped(
    session_factory, make_watch, runner_factory, lock_manager
):
    async with session_factory() as db:
        locked = await make_watch(db)
        paused = await make_watch(db, status=WatchStatus.PAUSED)
    lock_manager.held[locked.id] = "someone-else"
    runner = runner_factory()

    assert await runner.evaluate_watch(locked.id) is None
    assert await runner.evaluate_watch(paused.id) is None

    assert lock_manager.held == {locked.id: "someone-else"}
    assert (await load_watch(session_factory, locked.id)).next_check_at is None
    assert (await load_watch(session_factory, paused.id)).next_check_at is None


@pytest.mark.asyncio
async def test_check_sweep_spawns_and_drains(session_factory, make_watch, runner_factory, lock_manager):
    async with session_factory() as db:
        ids = [(await make_watch(db)).id for _ in range(3)]
        await make_watch(db, status=WatchStatus.CANCELLED)
    runner = runner_factory()

    spawned = await runner.check_due_watches()
    await runner.drain(timeout=5)

    assert spawned == 3
    assert sorted(lock_manager.acquired) == sorted(ids)
    assert runner.in_flight == set()
    for watch_id in ids:
        assert (await load_watch(session_factory, watch_id)).next_check_at is not None

    # Nothing is due any more
    assert await runner.check_due_watches() == 0


@pytest.mark.asyncio
async def test_sweep_skips_watches_already_in_flight(session_factory, make_watch, runner_factory):
    async with session_factory() as db:
        watch = await make_watch(db)
    blocking = BlockingEvaluator()
    runner = runner_factory(evaluator=blocking)

    assert await runner.check_due_watches() == 1
    for _ in range(50):
        if blocking.started:
            break
        await asyncio.sleep(0.01)
    assert runner.in_flight == {watch.id}

    assert await runner.check_due_watches() == 0

    blocking.release.set()
    await runner.drain(timeout=5)
    assert blocking.started == [watch.id]
    assert runner.in_flight == set()


@pytest.mark.asyncio
async def test_ingest_and_process(session_factory, runner_factory):
    runner = runner_factory()
    departure = (date.today() + timedelta(days=20)).isoformat()
    records = [
        RawProviderRecord(
            "AZ611", "kayak", "LAX to FLR",
            schedule={"departure_time": f"{departure}T10:00:00", "arrival_time": f"{departure}T22:00:00"},
            pricing={"price": "480"},
        ),
        RawProviderRecord("BAD1", "kayak", "LAX to FLR", schedule=None, pricing={"price": "480"}),
    ]

    assert await runner.ingest_records(records) == {"accepted": 1, "rejected": 1}

    stats = await runner.process_ingested()
    assert stats["promoted"] == 1
    async with session_factory() as db:
        [observation] = (await db.execute(select(PriceObservation))).scalars().all()
    assert observation.route == "LAX-FLR"
    assert observation.price == Decimal("480.00")


@pytest.mark.asyncio
async def test_cleanup_expires_past_travel_dates(session_factory, make_watch, runner_factory):
    yesterday = date.today() - timedelta(days=1)
    async with session_factory() as db:
        past = [
            (await make_watch(db, status=status, travel_date=yesterday)).id
            for status in (WatchStatus.ACTIVE, WatchStatus.PAUSED, WatchStatus.TRIGGERED)
        ]
        cancelled = (await make_watch(db, status=WatchStatus.CANCELLED, travel_date=yesterday)).id
        upcoming = (await make_watch(db)).id
    runner = runner_factory()

    stats = await runner.cleanup()

    assert stats["expired"] == 3
    for watch_id in past:
        assert (await load_watch(session_factory, watch_id)).status == WatchStatus.EXPIRED
    assert (await load_watch(session_factory, cancelled)).status == WatchStatus.CANCELLED
    assert (await load_watch(session_factory, upcoming)).status == WatchStatus.ACTIVE


@pytest.mark.asyncio
async def test_weekly_digest(session_factory, make_watch, runner_factory, notification_dispatcher):
    now = datetime.utcnow()
    async with session_factory() as db:
        triggered = await make_watch(db, owner_id=1, status=WatchStatus.TRIGGERED)
        db.add(
            TriggerEvent(
                watch_id=triggered.id,
                triggered_at=now - timedelta(days=1),
                price=Decimal("420.00"),
                drop_amount=Decimal("80.00"),
                drop_percentage=Decimal("16.00"),
            )
        )
        await db.commit()
        await make_watch(db, owner_id=1, travel_date=date.today() + timedelta(days=10))
        await make_watch(db, owner_id=2, created_at=now - timedelta(days=30))
    runner = runner_factory()

    async with session_factory() as db:
        summary = await runner.build_digest(db, 1, now)
    assert summary.alerts_triggered == 1
    assert summary.total_savings == Decimal("80.00")
    assert summary.new_watches == 2
    assert [deal["route"] for deal in summary.top_deals] == ["LAX-FLR"]
    assert len(summary.upcoming_trips) == 1

    assert await runner.send_weekly_digests(now) == 1
    [message] = notification_dispatcher.sent
    assert message.kind == MessageKind.DIGEST
    assert message.owner_id == 1
