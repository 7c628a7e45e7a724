"""Watch status transitions.

Every transition is a compare-and-set on the status column: the update only
applies while the row still has the status the caller read. A lost race
raises ConcurrencyConflict instead of silently overwriting a concurrent
pause, cancel or expiry.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.db.models import Watch, WatchStatus

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a lifecycle verb is not allowed from the current status."""

    def __init__(self, watch_id: int, current: str, target: str):
        self.watch_id = watch_id
        self.current = current
        self.target = target
        super().__init__(f"Watch {watch_id} cannot move from {current} to {target}")


class ConcurrencyConflict(Exception):
    """Raised when a watch's status changed between read and write."""

    def __init__(self, watch_id: int, expected: str):
        self.watch_id = watch_id
        self.expected = expected
        super().__init__(f"Watch {watch_id} is no longer {expected}")


TRANSITIONS = {
    WatchStatus.ACTIVE: {
        WatchStatus.TRIGGERED,
        WatchStatus.PAUSED,
        WatchStatus.EXPIRED,
        WatchStatus.CANCELLED,
    },
    WatchStatus.PAUSED: {WatchStatus.ACTIVE, WatchStatus.EXPIRED},
    WatchStatus.TRIGGERED: {WatchStatus.ACTIVE, WatchStatus.EXPIRED},
    WatchStatus.EXPIRED: set(),
    WatchStatus.CANCELLED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


async def compare_and_set_status(
    db: AsyncSession,
    watch_id: int,
    expected: str,
    target: str,
    **values,
) -> bool:
    """
    Set a watch's status only if it still equals expected.

    Does not commit. Extra column values are written in the same statement.

    Returns:
        True if the row was updated
    """
    result = await db.execute(
        update(Watch)
        .where(Watch.id == watch_id, Watch.status == expected)
        .values(status=target, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition(
    db: AsyncSession,
    watch: Watch,
    target: str,
    commit: bool = True,
    **values,
) -> Watch:
    """
    Move a watch to a new status.

    Raises:
        InvalidTransitionError: If target is not reachable from the current status
        ConcurrencyConflict: If the status changed underneath the caller
    """
    current = watch.status
    if not can_transition(current, target):
        raise InvalidTransitionError(watch.id, current, target)

    if not await compare_and_set_status(db, watch.id, current, target, **values):
        metrics.concurrency_conflicts_total.inc()
        raise ConcurrencyConflict(watch.id, current)

    if commit:
        await db.commit()
    await db.refresh(watch)
    logger.info(f"Watch {watch.id}: {current} -> {target}")
    return watch


async def pause(db: AsyncSession, watch: Watch) -> Watch:
    return await transition(db, watch, WatchStatus.PAUSED)


async def resume(db: AsyncSession, watch: Watch) -> Watch:
    """Reactivate a paused or triggered watch; it is checked on the next sweep."""
    return await transition(db, watch, WatchStatus.ACTIVE, next_check_at=None)


async def expire(db: AsyncSession, watch: Watch) -> Watch:
    return await transition(db, watch, WatchStatus.EXPIRED, next_check_at=None)


async def cancel(db: AsyncSession, watch: Watch) -> Watch:
    return await transition(db, watch, WatchStatus.CANCELLED, next_check_at=None)


async def mark_triggered(
    db: AsyncSession,
    watch: Watch,
    price,
    checked_at: Optional[datetime] = None,
    commit: bool = True,
) -> Watch:
    """Move an active watch to triggered, remembering the price that matched."""
    return await transition(
        db,
        watch,
        WatchStatus.TRIGGERED,
        commit=commit,
        last_triggered_price=price,
        last_checked_at=checked_at or datetime.utcnow(),
    )
