"""Tests for watch status transitions."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from pricewatch.db.models import Watch, WatchStatus
from pricewatch.detect import lifecycle
from pricewatch.detect.lifecycle import ConcurrencyConflict, InvalidTransitionError, can_transition


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (WatchStatus.ACTIVE, WatchStatus.TRIGGERED, True),
        (WatchStatus.ACTIVE, WatchStatus.CANCELLED, True),
        (WatchStatus.PAUSED, WatchStatus.ACTIVE, True),
        (WatchStatus.TRIGGERED, WatchStatus.ACTIVE, True),
        (WatchStatus.TRIGGERED, WatchStatus.EXPIRED, True),
        (WatchStatus.PAUSED, WatchStatus.TRIGGERED, False),
        (WatchStatus.TRIGGERED, WatchStatus.PAUSED, False),
        (WatchStatus.EXPIRED, WatchStatus.ACTIVE, False),
        (WatchStatus.CANCELLED, WatchStatus.ACTIVE, False),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


@pytest.mark.asyncio
async def test_pause_and_resume(db_session, make_watch):
    watch = await make_watch(db_session, next_check_at=datetime.utcnow() + timedelta(hours=5))

    await lifecycle.pause(db_session, watch)
    assert watch.status == WatchStatus.PAUSED

    await lifecycle.resume(db_session, watch)
    assert watch.status == WatchStatus.ACTIVE
    assert watch.next_check_at is None


@pytest.mark.asyncio
async def test_mark_triggered_keeps_price(db_session, make_watch):
    watch = await make_watch(db_session)

    await lifecycle.mark_triggered(db_session, watch, Decimal("420.00"))

    assert watch.status == WatchStatus.TRIGGERED
    assert watch.last_triggered_price == Decimal("420.00")
    assert watch.last_checked_at is not None


@pytest.mark.asyncio
async def test_terminal_states_reject_every_verb(db_session, make_watch):
    watch = await make_watch(db_session)
    await lifecycle.cancel(db_session, watch)

    for verb in (lifecycle.resume, lifecycle.pause, lifecycle.expire):
        with pytest.raises(InvalidTransitionError):
            await verb(db_session, watch)
    assert watch.status == WatchStatus.CANCELLED


@pytest.mark.asyncio
async def test_stale_status_raises_conflict(db_session, make_watch):
    watch = await make_watch(db_session)
    await db_session.execute(
        update(Watch)
        .where(Watch.id == watch.id)
        .values(status=WatchStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    with pytest.raises(ConcurrencyConflict):
        await lifecycle.pause(db_session, watch)

    await db_session.refresh(watch)
    assert watch.status == WatchStatus.CANCELLED
