"""Deliver watch notifications and keep notification history.

Each configured method is dispatched on its own: one failing channel never
stops the others, and every outcome becomes a NotificationRecord.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import NotificationRecord, Watch
from pricewatch.notify.dispatchers import (
    DispatchResult,
    HttpNotificationDispatcher,
    NotificationDispatcher,
    NotificationMessage,
    TransientDispatchError,
)
from pricewatch.notify.formatters import (
    DigestSummary,
    MessageKind,
    format_delivery_failure,
    format_digest,
)

logger = logging.getLogger(__name__)


def failure_streak(watch: Watch) -> tuple[int, bool]:
    """
    Count trailing failed deliveries for a watch.

    Returns:
        Tuple of (consecutive failures, whether a delivery-failure notice
        was already sent during this streak)
    """
    failures = 0
    already_notified = False
    for record in reversed(watch.notifications):
        if record.kind == MessageKind.DELIVERY_FAILURE:
            already_notified = True
            continue
        if record.success:
            break
        failures += 1
    return failures, already_notified


class Notifier:
    """Sends messages through a dispatcher and records the outcome."""

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        timeout: Optional[float] = None,
        failure_threshold: Optional[int] = None,
        fallback_method: Optional[str] = None,
    ):
        self.dispatcher = dispatcher or HttpNotificationDispatcher()
        self.timeout = timeout or settings.dispatch_timeout_seconds
        self.failure_threshold = failure_threshold or settings.repeated_failure_threshold
        self.fallback_method = fallback_method or settings.fallback_notification_method

    async def _dispatch(self, message: NotificationMessage) -> DispatchResult:
        try:
            return await asyncio.wait_for(self.dispatcher.send(message), timeout=self.timeout)
        except asyncio.TimeoutError:
            return DispatchResult(success=False, error=f"Timed out after {self.timeout}s")
        except TransientDispatchError as e:
            return DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected {message.method} dispatch error for watch {message.watch_id}")
            return DispatchResult(success=False, error=str(e))

    async def notify(
        self,
        db: AsyncSession,
        watch: Watch,
        kind: str,
        render: Callable[[str], str],
        methods: Optional[Iterable[str]] = None,
    ) -> List[NotificationRecord]:
        """
        Send one message per method and record each outcome.

        Args:
            db: Database session
            watch: Watch the message is about
            kind: Message kind (see MessageKind)
            render: Builds the content for a given method
            methods: Methods to use (defaults to the watch's configured methods)

        Returns:
            The NotificationRecords created, in method order
        """
        methods = list(methods) if methods is not None else list(watch.notification_methods)
        records = []

        for method in methods:
            content = render(method)
            result = await self._dispatch(
                NotificationMessage(watch_id=watch.id, method=method, kind=kind, content=content)
            )
            record = NotificationRecord(
                method=method,
                kind=kind,
                content=content,
                success=result.success,
                error=result.error,
            )
            watch.notifications.append(record)
            records.append(record)
            metrics.record_notification(method, result.success)

            if not result.success:
                logger.warning(
                    f"Failed to deliver {kind} via {method} for watch {watch.id}: {result.error}"
                )

        await db.commit()

        if kind != MessageKind.DELIVERY_FAILURE:
            await self._check_repeated_failures(db, watch)

        return records

    async def _check_repeated_failures(self, db: AsyncSession, watch: Watch):
        """Tell the owner once per failure streak that alerts are not getting through."""
        failures, already_notified = failure_streak(watch)
        if failures < self.failure_threshold or already_notified:
            return

        logger.warning(
            f"Watch {watch.id} has {failures} consecutive failed notifications, "
            f"sending notice via {self.fallback_method}"
        )
        content = format_delivery_failure(watch, failures)
        await self.notify(
            db,
            watch,
            MessageKind.DELIVERY_FAILURE,
            lambda method: content,
            methods=[self.fallback_method],
        )

    async def send_digest(self, summary: DigestSummary, method: str = "email") -> bool:
        """Send an owner's weekly digest. Not recorded against any watch."""
        result = await self._dispatch(
            NotificationMessage(
                watch_id=None,
                owner_id=summary.owner_id,
                method=method,
                kind=MessageKind.DIGEST,
                content=format_digest(summary),
            )
        )
        metrics.record_notification(method, result.success)
        if not result.success:
            logger.warning(f"Failed to deliver digest to owner {summary.owner_id}: {result.error}")
        return result.success

    async def close(self):
        close = getattr(self.dispatcher, "close", None)
        if close is not None:
            await close()
