"""Watch price matching and the actions a match produces."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from pricewatch.db.models import AutoBuySetting, Watch, WatchStatus


class ActionType(str, Enum):
    """What the evaluator should do with a checked price."""

    NONE = "none"
    NOTIFY = "notify"  # Send the price-drop notification on every configured method
    AUTO_BUY = "auto_buy"  # Attempt a purchase before notifying


@dataclass
class NoAction:
    reason: str = ""
    action_type: ActionType = ActionType.NONE


@dataclass
class SendNotification:
    price: Decimal
    methods: list = field(default_factory=list)
    # Set when a triggered watch sees a price below its last triggered price
    retrigger: bool = False
    action_type: ActionType = ActionType.NOTIFY


@dataclass
class AttemptAutoBuy:
    price: Decimal
    action_type: ActionType = ActionType.AUTO_BUY


Action = NoAction | SendNotification | AttemptAutoBuy


def price_matches(watch: Watch, price: Decimal) -> tuple[bool, str]:
    """
    Check a price against a watch's target and optional bounds.

    A price equal to the target matches.

    Returns:
        Tuple of (matched: bool, reason: str)
    """
    if price > watch.target_price:
        return False, f"Price ${price:.2f} above target ${watch.target_price:.2f}"
    if watch.min_price is not None and price < watch.min_price:
        return False, f"Price ${price:.2f} below minimum ${watch.min_price:.2f}"
    if watch.max_price is not None and price > watch.max_price:
        return False, f"Price ${price:.2f} above maximum ${watch.max_price:.2f}"
    return True, f"Price ${price:.2f} <= target ${watch.target_price:.2f}"


def auto_buy_ready(setting: Optional[AutoBuySetting]) -> bool:
    return setting is not None and setting.can_attempt


def decide(watch: Watch, price: Decimal, retrigger_on_further_drop: bool = True) -> Action:
    """
    Decide the action for a watch given its current price.

    Only active watches act on a match. A triggered watch re-notifies when
    the price falls strictly below its last triggered price, and never
    auto-buys.
    """
    matched, reason = price_matches(watch, price)

    if watch.status == WatchStatus.TRIGGERED:
        if not (matched and retrigger_on_further_drop):
            return NoAction(reason=reason if not matched else "Already triggered")
        if watch.last_triggered_price is not None and price >= watch.last_triggered_price:
            return NoAction(reason=f"No further drop below ${watch.last_triggered_price:.2f}")
        return SendNotification(
            price=price, methods=list(watch.notification_methods), retrigger=True
        )

    if watch.status != WatchStatus.ACTIVE:
        return NoAction(reason=f"Watch is {watch.status}")

    if not matched:
        return NoAction(reason=reason)

    if auto_buy_ready(watch.auto_buy):
        return AttemptAutoBuy(price=price)

    return SendNotification(price=price, methods=list(watch.notification_methods))
