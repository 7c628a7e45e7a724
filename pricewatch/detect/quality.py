"""Quality scores for watches and price observations.

Scores start at 1.0 and are always recomputed from the record's current
state, so rescoring the same record twice gives the same value. Results are
clamped to [0.1, 1.0].
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import PriceObservation, ValidationStatus, Watch, WatchStatus

logger = logging.getLogger(__name__)

MIN_SCORE = Decimal("0.1")
MAX_SCORE = Decimal("1.0")

# Watch adjustments
STALE_WATCH_PENALTY = Decimal("0.2")
TRIGGERED_BONUS = Decimal("0.1")
FAILED_NOTIFICATION_PENALTY = Decimal("0.05")

# Observation adjustments
SUSPICIOUS_PENALTY = Decimal("0.3")
DAY_OLD_PENALTY = Decimal("0.1")
HOUR_OLD_PENALTY = Decimal("0.05")


def clamp_score(score: Decimal) -> float:
    return float(max(MIN_SCORE, min(MAX_SCORE, score)))


class QualityScorer:
    """Computes and persists quality scores."""

    def __init__(self, stale_after: Optional[timedelta] = None):
        self.stale_after = stale_after or timedelta(days=settings.watch_stale_days)

    def watch_score(self, watch: Watch, now: Optional[datetime] = None) -> float:
        """
        Score a watch from its status, check recency and delivery history.

        - active and unchecked for longer than the stale window: -0.2
        - triggered: +0.1
        - each failed notification in history: -0.05
        """
        now = now or datetime.utcnow()
        score = MAX_SCORE

        if watch.status == WatchStatus.ACTIVE:
            last_seen = watch.last_checked_at or watch.created_at
            if last_seen is not None and now - last_seen > self.stale_after:
                score -= STALE_WATCH_PENALTY

        if watch.status == WatchStatus.TRIGGERED:
            score += TRIGGERED_BONUS

        score -= FAILED_NOTIFICATION_PENALTY * watch.failed_notification_count

        return clamp_score(score)

    def observation_score(
        self,
        validation_status: str,
        captured_at: datetime,
        now: Optional[datetime] = None,
    ) -> float:
        """
        Score an observation from its validation status and age.

        Only the larger of the two staleness penalties applies.
        """
        now = now or datetime.utcnow()
        score = MAX_SCORE

        if validation_status == ValidationStatus.SUSPICIOUS:
            score -= SUSPICIOUS_PENALTY

        age = now - captured_at
        if age > timedelta(days=1):
            score -= DAY_OLD_PENALTY
        elif age > timedelta(hours=1):
            score -= HOUR_OLD_PENALTY

        return clamp_score(score)

    def rescore_watch(self, watch: Watch, now: Optional[datetime] = None) -> float:
        """Recompute and assign a watch's score. Caller commits."""
        watch.quality_score = self.watch_score(watch, now)
        return watch.quality_score

    def rescore_observation(
        self, observation: PriceObservation, now: Optional[datetime] = None
    ) -> float:
        """Recompute and assign an observation's score. Caller commits."""
        observation.quality_score = self.observation_score(
            observation.validation_status, observation.captured_at, now
        )
        return observation.quality_score

    async def rescore_all(
        self,
        db: AsyncSession,
        batch_size: int = 500,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Rescore every non-terminal watch and every observation.

        Returns:
            Dict with counts of rescored and changed rows
        """
        now = now or datetime.utcnow()
        stats = {"watches": 0, "watches_changed": 0, "observations": 0, "observations_changed": 0}

        last_id = 0
        while True:
            result = await db.execute(
                select(Watch)
                .where(Watch.id > last_id, Watch.status.not_in(WatchStatus.TERMINAL))
                .order_by(Watch.id)
                .limit(batch_size)
            )
            watches = list(result.scalars().all())
            if not watches:
                break
            for watch in watches:
                before = watch.quality_score
                if self.rescore_watch(watch, now) != before:
                    stats["watches_changed"] += 1
            stats["watches"] += len(watches)
            last_id = watches[-1].id
            await db.commit()

        last_id = 0
        while True:
            result = await db.execute(
                select(PriceObservation)
                .where(PriceObservation.id > last_id)
                .order_by(PriceObservation.id)
                .limit(batch_size)
            )
            observations = list(result.scalars().all())
            if not observations:
                break
            for observation in observations:
                before = observation.quality_score
                if self.rescore_observation(observation, now) != before:
                    stats["observations_changed"] += 1
            stats["observations"] += len(observations)
            last_id = observations[-1].id
            await db.commit()

        logger.info(
            f"Rescored {stats['watches']} watches ({stats['watches_changed']} changed) "
            f"and {stats['observations']} observations ({stats['observations_changed']} changed)"
        )
        return stats


quality_scorer = QualityScorer()
