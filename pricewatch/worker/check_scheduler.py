"""When each watch is checked next."""

import logging
import random
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import Watch, WatchStatus

logger = logging.getLogger(__name__)


class CheckScheduler:
    """
    Computes check intervals and finds due watches.

    Interval tiers, first match wins:
    - triggered: follow-up interval (30 min)
    - urgent (travel date within the urgency window): 1 hour, or the
      monitor-frequency interval when that is shorter
    - otherwise the monitor-frequency interval, or 6 hours without one
    """

    def __init__(
        self,
        urgency_window: Optional[timedelta] = None,
        triggered_interval: Optional[timedelta] = None,
        urgent_interval: Optional[timedelta] = None,
        default_interval: Optional[timedelta] = None,
        frequency_intervals: Optional[Dict[str, int]] = None,
        jitter_ratio: Optional[float] = None,
    ):
        self.urgency_window = urgency_window or timedelta(days=settings.urgency_window_days)
        self.triggered_interval = triggered_interval or timedelta(
            minutes=settings.triggered_interval_minutes
        )
        self.urgent_interval = urgent_interval or timedelta(minutes=settings.urgent_interval_minutes)
        self.default_interval = default_interval or timedelta(
            minutes=settings.default_interval_minutes
        )
        self.frequency_intervals = {
            name: timedelta(minutes=minutes)
            for name, minutes in (frequency_intervals or settings.monitor_frequency_minutes).items()
        }
        self.jitter_ratio = settings.schedule_jitter_ratio if jitter_ratio is None else jitter_ratio

    def is_urgent(self, watch: Watch, today: Optional[date] = None) -> bool:
        """Travel date has not passed and is within the urgency window."""
        if watch.travel_date is None:
            return False
        today = today or datetime.utcnow().date()
        return today <= watch.travel_date <= today + self.urgency_window

    def next_interval(self, watch: Watch, today: Optional[date] = None) -> timedelta:
        """Interval until the next check, before jitter."""
        if watch.status == WatchStatus.TRIGGERED:
            return self.triggered_interval

        preferred = self.frequency_intervals.get(watch.monitor_frequency or "")
        if self.is_urgent(watch, today):
            if preferred is not None:
                return min(self.urgent_interval, preferred)
            return self.urgent_interval

        return preferred or self.default_interval

    def _jitter(self, interval: timedelta) -> timedelta:
        if not self.jitter_ratio:
            return interval
        spread = interval.total_seconds() * self.jitter_ratio
        return interval + timedelta(seconds=random.uniform(-spread, spread))

    def schedule(self, watch: Watch, now: Optional[datetime] = None) -> datetime:
        """
        Record a check at now and set the next one. Caller commits.

        Returns:
            The new next-check time
        """
        now = now or datetime.utcnow()
        watch.last_checked_at = now
        watch.next_check_at = now + self._jitter(self.next_interval(watch, now.date()))
        return watch.next_check_at

    async def due(
        self,
        db: AsyncSession,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Watch]:
        """
        Active or triggered watches whose next check has come, oldest-due first.

        Watches that were never scheduled come first.
        """
        now = now or datetime.utcnow()
        query = (
            select(Watch)
            .where(
                Watch.status.in_(WatchStatus.MONITORED),
                (Watch.next_check_at.is_(None)) | (Watch.next_check_at <= now),
            )
            .order_by(Watch.next_check_at.asc().nulls_first(), Watch.id.asc())
        )
        if limit:
            query = query.limit(limit)

        result = await db.execute(query)
        return list(result.scalars().all())


check_scheduler = CheckScheduler()
