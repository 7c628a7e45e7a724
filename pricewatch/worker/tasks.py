"""Background sweeps for watch checking, ingestion, quality and retention."""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import TriggerEvent, Watch, WatchStatus
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.detect.engine import AlertEvaluator, EvaluationResult
from pricewatch.detect.lifecycle import ConcurrencyConflict, expire
from pricewatch.detect.quality import QualityScorer, quality_scorer
from pricewatch.ingest.base import RawProviderRecord
from pricewatch.ingest.observation_store import (
    IngestError,
    PriceObservationStore,
    observation_store,
)
from pricewatch.logging_config import get_logger
from pricewatch.notify.formatters import DigestSummary
from pricewatch.worker.check_scheduler import CheckScheduler, check_scheduler
from pricewatch.worker.watch_lock import WatchLockManager

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background sweeps.

    The check sweep hands each due watch to its own asyncio task and returns
    without waiting for them. A semaphore bounds how many evaluations run at
    once, and a watch is never evaluated twice concurrently: an in-process
    in-flight set guards this worker and a Redis lock guards the rest.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        evaluator: Optional[AlertEvaluator] = None,
        lock_manager: Optional[WatchLockManager] = None,
        scheduler: Optional[CheckScheduler] = None,
        store: Optional[PriceObservationStore] = None,
        scorer: Optional[QualityScorer] = None,
        max_concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.evaluator = evaluator
        self.lock_manager = lock_manager or WatchLockManager()
        self.check_scheduler = scheduler or check_scheduler
        self.store = store or observation_store
        self.scorer = scorer or quality_scorer
        self.batch_size = batch_size or settings.check_sweep_batch_size

        self._semaphore = asyncio.Semaphore(max_concurrency or settings.max_concurrent_evaluations)
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[int] = set()

    async def initialize(self):
        """Initialize task runner."""
        if self.evaluator is None:
            self.evaluator = AlertEvaluator()
        logger.info("Task runner initialized")

    async def close(self, timeout: Optional[float] = 30.0):
        """Drain in-flight evaluations and release clients."""
        await self.drain(timeout)
        if self.evaluator is not None:
            await self.evaluator.notifier.close()
            close_payment = getattr(self.evaluator.payment_dispatcher, "close", None)
            if close_payment is not None:
                await close_payment()
        await self.lock_manager.close()

    @property
    def in_flight(self) -> set[int]:
        return set(self._in_flight)

    async def drain(self, timeout: Optional[float] = None):
        """Wait for spawned evaluations to finish."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info(f"Waiting for {len(pending)} in-flight evaluations")
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} evaluations still running after {timeout}s, cancelling")
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)

    async def _run_job(self, job_type: str, job):
        """Run a sweep body, recording its outcome in metrics."""
        try:
            result = await job()
        except Exception:
            logger.exception(f"{job_type} sweep failed")
            metrics.record_scheduler_run(job_type, success=False)
            raise
        metrics.record_scheduler_run(job_type, success=True)
        return result

    # ------------------------------------------------------------------
    # Check sweep
    # ------------------------------------------------------------------

    async def check_due_watches(self, now: Optional[datetime] = None) -> int:
        """
        Spawn an evaluation for every due watch (scheduled trigger).

        Returns:
            Number of evaluations spawned
        """
        return await self._run_job("check", lambda: self._spawn_due(now))

    async def _spawn_due(self, now: Optional[datetime]) -> int:
        if self.evaluator is None:
            await self.initialize()

        async with self.session_factory() as db:
            watches = await self.check_scheduler.due(db, now=now, limit=self.batch_size)
            watch_ids = [watch.id for watch in watches]

        metrics.watches_due.set(len(watch_ids))

        spawned = 0
        for watch_id in watch_ids:
            if watch_id in self._in_flight:
                continue
            self._in_flight.add(watch_id)
            task = asyncio.create_task(
                self._run_evaluation(watch_id), name=f"evaluate-watch-{watch_id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            spawned += 1

        logger.info(f"Check sweep: {len(watch_ids)} due, {spawned} evaluations started")
        return spawned

    async def _run_evaluation(self, watch_id: int):
        try:
            async with self._semaphore:
                metrics.evaluations_in_flight.inc()
                try:
                    await self.evaluate_watch(watch_id)
                finally:
                    metrics.evaluations_in_flight.dec()
        except Exception:
            get_logger(__name__, watch_id=watch_id, sweep="check").exception(
                f"Evaluation of watch {watch_id} failed"
            )
        finally:
            self._in_flight.discard(watch_id)

    async def evaluate_watch(self, watch_id: int) -> Optional[EvaluationResult]:
        """
        Evaluate one watch under its lock, then reschedule it.

        The watch is rescheduled whatever the evaluation outcome, including
        errors.

        Returns:
            EvaluationResult, or None if the watch was locked or not monitored
        """
        token = await self.lock_manager.acquire(watch_id)
        if token is None:
            return None

        start_time = time.monotonic()
        outcome = "error"
        result = None
        try:
            async with self.session_factory() as db:
                watch = await db.get(Watch, watch_id)
                if watch is None or watch.status not in WatchStatus.MONITORED:
                    outcome = "skipped"
                    return None

                try:
                    result = await self.evaluator.evaluate(db, watch)
                    outcome = result.outcome
                except Exception:
                    logger.exception(f"Error evaluating watch {watch_id}")
                    await db.rollback()

                await self._reschedule(db, watch)
                return result
        finally:
            await self.lock_manager.release(watch_id, token)
            metrics.record_watch_checked(outcome, time.monotonic() - start_time)

    async def _reschedule(self, db: AsyncSession, watch: Watch):
        # Pick up a status change made while the evaluation was running
        await db.refresh(watch)
        if watch.status not in WatchStatus.MONITORED:
            return
        self.check_scheduler.schedule(watch)
        self.scorer.rescore_watch(watch)
        await db.commit()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_records(self, records: Iterable[RawProviderRecord]) -> dict:
        """
        Store a batch of raw provider records.

        Malformed records are logged and skipped.
        """
        stats = {"accepted": 0, "rejected": 0}
        async with self.session_factory() as db:
            for raw in records:
                try:
                    await self.store.ingest(db, raw)
                    stats["accepted"] += 1
                except IngestError as e:
                    logger.warning(f"Rejected provider record from {raw.provider}: {e}")
                    stats["rejected"] += 1
        return stats

    async def process_ingested(self) -> dict:
        """Validate, merge and promote pending provider records (scheduled trigger)."""

        async def job():
            async with self.session_factory() as db:
                return await self.store.process_pending(db)

        return await self._run_job("ingest", job)

    # ------------------------------------------------------------------
    # Quality, retention, digest
    # ------------------------------------------------------------------

    async def rescore_quality(self) -> dict:
        """Recompute quality scores for watches and observations (scheduled trigger)."""

        async def job():
            async with self.session_factory() as db:
                return await self.scorer.rescore_all(db, batch_size=settings.rescore_batch_size)

        return await self._run_job("rescore", job)

    async def cleanup(self, now: Optional[datetime] = None) -> dict:
        """Purge old data and expire watches whose travel date has passed (scheduled trigger)."""
        return await self._run_job("cleanup", lambda: self._cleanup(now or datetime.utcnow()))

    async def _cleanup(self, now: datetime) -> dict:
        stats = {"provider_records": 0, "observations": 0, "expired": 0}

        async with self.session_factory() as db:
            stats["provider_records"] = await self.store.purge_older_than(
                db, now - timedelta(hours=settings.provider_data_retention_hours)
            )
            stats["observations"] = await self.store.purge_observations_older_than(
                db, now - timedelta(days=settings.price_history_retention_days)
            )

            result = await db.execute(
                select(Watch).where(
                    Watch.status.in_(
                        (WatchStatus.ACTIVE, WatchStatus.PAUSED, WatchStatus.TRIGGERED)
                    ),
                    Watch.travel_date < now.date(),
                )
            )
            for watch in result.scalars().all():
                try:
                    await expire(db, watch)
                    stats["expired"] += 1
                except ConcurrencyConflict as e:
                    logger.info(f"Skipping expiry: {e}")

        logger.info(
            f"Cleanup: purged {stats['provider_records']} provider records and "
            f"{stats['observations']} observations, expired {stats['expired']} watches"
        )
        return stats

    async def send_weekly_digests(self, now: Optional[datetime] = None) -> int:
        """Send each owner with monitored watches a summary of the week (scheduled trigger)."""
        return await self._run_job("digest", lambda: self._send_digests(now or datetime.utcnow()))

    async def _send_digests(self, now: datetime) -> int:
        if self.evaluator is None:
            await self.initialize()

        async with self.session_factory() as db:
            result = await db.execute(
                select(Watch.owner_id)
                .where(Watch.status.in_(WatchStatus.MONITORED))
                .distinct()
                .order_by(Watch.owner_id)
            )
            owner_ids = list(result.scalars().all())

            sent = 0
            for owner_id in owner_ids:
                summary = await self.build_digest(db, owner_id, now)
                if not summary.has_activity:
                    continue
                if await self.evaluator.notifier.send_digest(summary):
                    sent += 1

        logger.info(f"Weekly digest sent to {sent} of {len(owner_ids)} owners")
        return sent

    async def build_digest(self, db: AsyncSession, owner_id: int, now: datetime) -> DigestSummary:
        """Collect an owner's activity over the last seven days."""
        week_ago = now - timedelta(days=7)
        summary = DigestSummary(owner_id=owner_id)

        result = await db.execute(
            select(TriggerEvent, Watch.route)
            .join(Watch, TriggerEvent.watch_id == Watch.id)
            .where(Watch.owner_id == owner_id, TriggerEvent.triggered_at >= week_ago)
            .order_by(TriggerEvent.drop_amount.desc(), TriggerEvent.id.asc())
        )
        triggers = result.all()
        summary.alerts_triggered = len(triggers)
        summary.total_savings = sum(
            (Decimal(str(event.drop_amount)) for event, _ in triggers), Decimal("0")
        )
        summary.top_deals = [
            {
                "route": route,
                "price": event.price,
                "savings": event.drop_amount,
                "percentage": event.drop_percentage,
            }
            for event, route in triggers[:5]
        ]

        result = await db.execute(
            select(func.count(Watch.id)).where(
                Watch.owner_id == owner_id, Watch.created_at >= week_ago
            )
        )
        summary.new_watches = result.scalar() or 0

        today = now.date()
        result = await db.execute(
            select(Watch)
            .where(
                Watch.owner_id == owner_id,
                Watch.status == WatchStatus.ACTIVE,
                Watch.travel_date.between(
                    today, today + timedelta(days=settings.urgency_window_days)
                ),
            )
            .order_by(Watch.travel_date.asc())
            .limit(5)
        )
        summary.upcoming_trips = [
            {
                "route": watch.route,
                "travel_date": watch.travel_date,
                "target_price": watch.target_price,
            }
            for watch in result.scalars().all()
        ]
        return summary


task_runner = TaskRunner()
