"""Watch alert evaluation engine."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import exists, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import AutoBuySetting, BookingAction, TriggerEvent, Watch, WatchStatus
from pricewatch.detect.analytics import PriceAnalytics, PriceContext, price_analytics
from pricewatch.detect.lifecycle import (
    ConcurrencyConflict,
    compare_and_set_status,
    mark_triggered,
)
from pricewatch.detect.rules import (
    Action,
    AttemptAutoBuy,
    NoAction,
    decide,
)
from pricewatch.ingest.observation_store import PriceObservationStore, observation_store
from pricewatch.notify.dispatchers import (
    HttpPaymentDispatcher,
    PaymentDispatcher,
    PurchaseResult,
    TransientDispatchError,
)
from pricewatch.notify.formatters import (
    MessageKind,
    format_auto_buy_exhausted,
    format_auto_buy_failed,
    format_auto_buy_success,
    format_price_drop,
)
from pricewatch.notify.notifier import Notifier

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ExhaustedAutoBuyError(Exception):
    """Raised when a failed purchase uses up the last auto-buy attempt."""

    def __init__(self, watch_id: int, attempts: int, last_error: Optional[str] = None):
        self.watch_id = watch_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Auto-buy for watch {watch_id} exhausted after {attempts} attempts")


class EvaluationOutcome:
    """Outcomes reported for a single watch evaluation."""

    NO_PRICE = "no_price"
    NO_MATCH = "no_match"
    TRIGGERED = "triggered"
    RETRIGGERED = "retriggered"
    AUTO_BUY_SUCCESS = "auto_buy_success"
    AUTO_BUY_FAILED = "auto_buy_failed"
    AUTO_BUY_EXHAUSTED = "auto_buy_exhausted"
    CONFLICT = "conflict"


@dataclass
class EvaluationResult:
    """Result of evaluating a watch against its current price."""

    watch_id: int
    outcome: str
    price: Optional[Decimal] = None
    provider: Optional[str] = None


def drop_from_target(target: Decimal, price: Decimal) -> tuple[Decimal, Decimal]:
    """Drop amount and percentage (2 places) of a price below a target."""
    amount = target - price
    if not target:
        return amount, Decimal("0")
    percentage = (amount / target * 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return amount, percentage


class AlertEvaluator:
    """
    Checks watches against current prices and carries out the result.

    Status changes go through a compare-and-set so that a pause, cancel or
    expiry applied while an evaluation is in flight wins over that
    evaluation's result.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        payment_dispatcher: Optional[PaymentDispatcher] = None,
        store: Optional[PriceObservationStore] = None,
        analytics: Optional[PriceAnalytics] = None,
        payment_timeout: Optional[float] = None,
        retrigger_on_further_drop: Optional[bool] = None,
    ):
        self.notifier = notifier or Notifier()
        self.payment_dispatcher = payment_dispatcher or HttpPaymentDispatcher()
        self.store = store or observation_store
        self.analytics = analytics or price_analytics
        self.payment_timeout = payment_timeout or settings.payment_timeout_seconds
        self.retrigger_on_further_drop = (
            settings.retrigger_on_further_drop
            if retrigger_on_further_drop is None
            else retrigger_on_further_drop
        )

    def check_price(self, watch: Watch, current_price: Decimal) -> Action:
        """
        Decide what a price means for a watch. Pure; nothing is written.

        Args:
            watch: Watch with its auto-buy setting loaded
            current_price: Current price for the watch's route

        Returns:
            NoAction, SendNotification or AttemptAutoBuy
        """
        return decide(watch, current_price, self.retrigger_on_further_drop)

    async def evaluate(self, db: AsyncSession, watch: Watch) -> EvaluationResult:
        """
        Look up the current price for a watch and act on it.

        Rescheduling is left to the caller.
        """
        observation = await self.store.latest_price(
            db, watch.route, travel_date=watch.travel_date, booking_class=watch.booking_class
        )
        if observation is None:
            watch.last_checked_at = datetime.utcnow()
            await db.commit()
            return EvaluationResult(watch_id=watch.id, outcome=EvaluationOutcome.NO_PRICE)

        price = Decimal(str(observation.price))
        action = self.check_price(watch, price)
        return await self.apply(db, watch, action, provider=observation.provider)

    async def apply(
        self,
        db: AsyncSession,
        watch: Watch,
        action: Action,
        provider: Optional[str] = None,
    ) -> EvaluationResult:
        """Carry out an action produced by check_price."""
        try:
            if isinstance(action, NoAction):
                watch.last_checked_at = datetime.utcnow()
                await db.commit()
                return EvaluationResult(watch_id=watch.id, outcome=EvaluationOutcome.NO_MATCH)

            if isinstance(action, AttemptAutoBuy):
                outcome = await self.attempt_auto_buy(db, watch, action.price, provider)
            elif action.retrigger:
                outcome = await self.retrigger(db, watch, action.price, provider)
            else:
                outcome = await self.trigger(db, watch, action.price, provider)

        except ConcurrencyConflict as e:
            logger.info(f"Discarding evaluation of watch {watch.id}: {e}")
            await db.refresh(watch)
            return EvaluationResult(watch_id=watch.id, outcome=EvaluationOutcome.CONFLICT)

        return EvaluationResult(
            watch_id=watch.id, outcome=outcome, price=action.price, provider=provider
        )

    async def _price_context(self, db: AsyncSession, watch: Watch, price: Decimal) -> Optional[PriceContext]:
        try:
            return await self.analytics.price_context(db, watch.route, price)
        except Exception as e:
            logger.warning(f"Could not compute price context for {watch.route}: {e}")
            return None

    def _record_trigger(
        self, watch: Watch, price: Decimal, provider: Optional[str], now: datetime
    ) -> TriggerEvent:
        amount, percentage = drop_from_target(watch.target_price, price)
        event = TriggerEvent(
            triggered_at=now,
            price=price,
            provider=provider,
            drop_amount=amount,
            drop_percentage=percentage,
        )
        watch.triggers.append(event)
        return event

    async def _notify_price_drop(self, db: AsyncSession, watch: Watch, price: Decimal):
        context = await self._price_context(db, watch, price)
        await self.notifier.notify(
            db,
            watch,
            MessageKind.PRICE_DROP,
            lambda method: format_price_drop(watch, price, method, context),
        )

    async def trigger(
        self,
        db: AsyncSession,
        watch: Watch,
        price: Decimal,
        provider: Optional[str] = None,
    ) -> str:
        """
        Move an active watch to triggered and send the price-drop alert.

        Raises:
            ConcurrencyConflict: If the watch stopped being active
        """
        now = datetime.utcnow()
        await mark_triggered(db, watch, price, checked_at=now, commit=False)
        self._record_trigger(watch, price, provider, now)
        await db.commit()

        metrics.alerts_triggered_total.labels(kind="initial").inc()
        logger.info(f"Watch {watch.id} triggered at ${price:.2f} (target ${watch.target_price:.2f})")

        await self._notify_price_drop(db, watch, price)
        return EvaluationOutcome.TRIGGERED

    async def retrigger(
        self,
        db: AsyncSession,
        watch: Watch,
        price: Decimal,
        provider: Optional[str] = None,
    ) -> str:
        """
        Record a further drop on an already triggered watch and alert again.

        Raises:
            ConcurrencyConflict: If the watch stopped being triggered
        """
        now = datetime.utcnow()
        updated = await compare_and_set_status(
            db,
            watch.id,
            WatchStatus.TRIGGERED,
            WatchStatus.TRIGGERED,
            last_triggered_price=price,
            last_checked_at=now,
        )
        if not updated:
            metrics.concurrency_conflicts_total.inc()
            raise ConcurrencyConflict(watch.id, WatchStatus.TRIGGERED)

        await db.refresh(watch)
        self._record_trigger(watch, price, provider, now)
        await db.commit()

        metrics.alerts_triggered_total.labels(kind="retrigger").inc()
        logger.info(f"Watch {watch.id} dropped further to ${price:.2f}")

        await self._notify_price_drop(db, watch, price)
        return EvaluationOutcome.RETRIGGERED

    async def _claim_attempt(self, db: AsyncSession, watch: Watch) -> bool:
        """
        Take one auto-buy attempt in a single conditional update.

        The attempt is only taken while auto-buy is enabled, below its cap
        and the watch is still active. Committed before any purchase call.
        """
        result = await db.execute(
            update(AutoBuySetting)
            .where(
                AutoBuySetting.watch_id == watch.id,
                AutoBuySetting.enabled.is_(True),
                AutoBuySetting.attempts_count < AutoBuySetting.max_attempts,
                exists().where(
                    Watch.id == AutoBuySetting.watch_id,
                    Watch.status == WatchStatus.ACTIVE,
                ),
            )
            .values(attempts_count=AutoBuySetting.attempts_count + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def _purchase(self, watch: Watch, price: Decimal) -> PurchaseResult:
        try:
            return await asyncio.wait_for(
                self.payment_dispatcher.purchase(watch.id, price, watch.auto_buy.payment_reference),
                timeout=self.payment_timeout,
            )
        except asyncio.TimeoutError:
            return PurchaseResult(success=False, error=f"Timed out after {self.payment_timeout}s")
        except TransientDispatchError as e:
            return PurchaseResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected payment error for watch {watch.id}")
            return PurchaseResult(success=False, error=str(e))

    async def attempt_auto_buy(
        self,
        db: AsyncSession,
        watch: Watch,
        price: Decimal,
        provider: Optional[str] = None,
    ) -> str:
        """
        Try to buy at the matching price.

        Each failed attempt is reported to the owner. A failure that uses up
        the last attempt disables auto-buy for good, tells the owner, and
        falls back to the plain price-drop alert.

        Raises:
            ConcurrencyConflict: If the watch stopped being active
        """
        if not await self._claim_attempt(db, watch):
            await db.refresh(watch)
            if watch.status != WatchStatus.ACTIVE:
                metrics.concurrency_conflicts_total.inc()
                raise ConcurrencyConflict(watch.id, WatchStatus.ACTIVE)
            logger.info(f"No auto-buy attempt left for watch {watch.id}, notifying instead")
            return await self.trigger(db, watch, price, provider)

        await db.refresh(watch.auto_buy)
        result = await self._purchase(watch, price)

        watch.booking_actions.append(
            BookingAction(
                price=price,
                success=result.success,
                confirmation=result.confirmation,
                error_message=result.error,
            )
        )
        await db.commit()

        if result.success:
            return await self._auto_buy_succeeded(db, watch, price, provider, result)

        metrics.record_auto_buy("failure")
        logger.warning(
            f"Auto-buy attempt {watch.auto_buy.attempts_count}/{watch.auto_buy.max_attempts} "
            f"failed for watch {watch.id}: {result.error}"
        )

        try:
            self._check_exhausted(watch, result.error)
        except ExhaustedAutoBuyError as e:
            await self._auto_buy_exhausted(db, watch, e)
            await self.trigger(db, watch, price, provider)
            return EvaluationOutcome.AUTO_BUY_EXHAUSTED

        await self.notifier.notify(
            db,
            watch,
            MessageKind.AUTO_BUY_FAILED,
            lambda method: format_auto_buy_failed(watch, price, method, result.error),
        )
        return EvaluationOutcome.AUTO_BUY_FAILED

    def _check_exhausted(self, watch: Watch, last_error: Optional[str]):
        """Raise ExhaustedAutoBuyError once the attempt cap is reached."""
        if watch.auto_buy.max_attempts_reached:
            raise ExhaustedAutoBuyError(watch.id, watch.auto_buy.attempts_count, last_error)

    async def _auto_buy_succeeded(
        self,
        db: AsyncSession,
        watch: Watch,
        price: Decimal,
        provider: Optional[str],
        result: PurchaseResult,
    ) -> str:
        metrics.record_auto_buy("success")
        logger.info(f"Auto-buy succeeded for watch {watch.id} at ${price:.2f}")

        now = datetime.utcnow()
        try:
            await mark_triggered(db, watch, price, checked_at=now, commit=False)
            self._record_trigger(watch, price, provider, now)
            await db.commit()
            metrics.alerts_triggered_total.labels(kind="auto_buy").inc()
        except ConcurrencyConflict as e:
            # The purchase went through; the owner still hears about it
            logger.warning(f"Watch {watch.id} changed status during a successful purchase: {e}")
            await db.refresh(watch)

        await self.notifier.notify(
            db,
            watch,
            MessageKind.AUTO_BUY_SUCCESS,
            lambda method: format_auto_buy_success(watch, price, method, result.confirmation),
        )
        return EvaluationOutcome.AUTO_BUY_SUCCESS

    async def _auto_buy_exhausted(self, db: AsyncSession, watch: Watch, error: ExhaustedAutoBuyError):
        setting = watch.auto_buy
        setting.enabled = False
        setting.disabled_reason = "max_attempts_reached"
        setting.disabled_at = datetime.utcnow()
        await db.commit()

        metrics.record_auto_buy("exhausted")
        logger.warning(f"{error}; auto-buy disabled")

        await self.notifier.notify(
            db,
            watch,
            MessageKind.AUTO_BUY_EXHAUSTED,
            lambda method: format_auto_buy_exhausted(watch, method, error.last_error),
        )
