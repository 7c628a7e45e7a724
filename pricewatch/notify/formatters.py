"""Message formatters for watch notifications.

SMS and push get a single short line; email and in-app messages carry the
full detail.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from pricewatch.db.models import Watch
from pricewatch.detect.analytics import PriceContext

SHORT_METHODS = ("sms", "push")


class MessageKind:
    """Notification kinds recorded in history."""

    PRICE_DROP = "price_drop"
    AUTO_BUY_SUCCESS = "auto_buy_success"
    AUTO_BUY_FAILED = "auto_buy_failed"
    AUTO_BUY_EXHAUSTED = "auto_buy_exhausted"
    DELIVERY_FAILURE = "delivery_failure"
    DIGEST = "digest"


@dataclass
class DigestSummary:
    """One owner's watch activity over the past week."""

    owner_id: int
    alerts_triggered: int = 0
    new_watches: int = 0
    total_savings: Decimal = Decimal("0")
    top_deals: List[dict] = field(default_factory=list)
    upcoming_trips: List[dict] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        return self.alerts_triggered > 0 or self.new_watches > 0


def _label(watch: Watch) -> str:
    label = watch.name or watch.route
    if watch.travel_date:
        label += f" on {watch.travel_date.isoformat()}"
    return label


def format_price_drop(
    watch: Watch,
    price: Decimal,
    method: str,
    context: Optional[PriceContext] = None,
) -> str:
    """
    Format a price-drop alert.

    Args:
        watch: Watch that matched
        price: Matching price
        method: Delivery method
        context: Optional route statistics to include

    Returns:
        Message text
    """
    drop = watch.target_price - price
    if method in SHORT_METHODS:
        return f"Price drop: {watch.route} now ${price:.2f} (target ${watch.target_price:.2f})"

    lines = [
        f"Price drop for {_label(watch)}",
        f"Current price: ${price:.2f} {watch.currency}",
        f"Your target: ${watch.target_price:.2f}",
        f"Below target by: ${drop:.2f}",
    ]
    if context is not None and context.average_price is not None:
        lines.append(
            f"30-day average: ${context.average_price:.2f} "
            f"(volatility {context.volatility:.2f}%)"
        )
        if context.is_outlier:
            lines.append("This price is unusually low for the route.")
    return "\n".join(lines)


def format_auto_buy_success(
    watch: Watch,
    price: Decimal,
    method: str,
    confirmation: Optional[str] = None,
) -> str:
    """Format a successful purchase confirmation."""
    if method in SHORT_METHODS:
        return f"Booked {watch.route} for ${price:.2f}"

    lines = [
        f"Auto-buy completed for {_label(watch)}",
        f"Purchased at: ${price:.2f} {watch.currency}",
    ]
    if confirmation:
        lines.append(f"Confirmation: {confirmation}")
    return "\n".join(lines)


def format_auto_buy_failed(
    watch: Watch,
    price: Decimal,
    method: str,
    error: Optional[str] = None,
) -> str:
    """Format the notice for a failed purchase that will be retried."""
    attempts = watch.auto_buy.attempts_count if watch.auto_buy else 0
    max_attempts = watch.auto_buy.max_attempts if watch.auto_buy else 0
    if method in SHORT_METHODS:
        return f"Auto-buy for {watch.route} at ${price:.2f} failed (attempt {attempts}/{max_attempts})"

    lines = [
        f"Auto-buy failed for {_label(watch)}",
        f"Attempted price: ${price:.2f} {watch.currency}",
        f"Attempt {attempts} of {max_attempts}. We will try again on the next matching price.",
    ]
    if error:
        lines.append(f"Error: {error}")
    return "\n".join(lines)


def format_auto_buy_exhausted(watch: Watch, method: str, last_error: Optional[str] = None) -> str:
    """Format the notice sent when auto-buy runs out of attempts."""
    attempts = watch.auto_buy.max_attempts if watch.auto_buy else 0
    if method in SHORT_METHODS:
        return f"Auto-buy for {watch.route} stopped after {attempts} failed attempts"

    lines = [
        f"Auto-buy disabled for {_label(watch)}",
        f"All {attempts} purchase attempts failed, so no further attempts will be made.",
        "You will keep receiving price alerts for this watch.",
    ]
    if last_error:
        lines.append(f"Last error: {last_error}")
    return "\n".join(lines)


def format_delivery_failure(watch: Watch, failures: int) -> str:
    """Format the notice about repeated delivery failures."""
    methods = ", ".join(watch.notification_methods)
    return (
        f"We could not deliver {failures} recent alerts for {_label(watch)} "
        f"via {methods}. Please check your notification settings."
    )


def format_digest(summary: DigestSummary) -> str:
    """Format an owner's weekly digest."""
    lines = [
        "Your weekly price watch summary",
        f"Alerts triggered: {summary.alerts_triggered}",
        f"New watches: {summary.new_watches}",
        f"Total below-target savings: ${summary.total_savings:.2f}",
    ]

    if summary.top_deals:
        lines.append("")
        lines.append("Top deals:")
        for deal in summary.top_deals:
            lines.append(
                f"  {deal['route']}: ${deal['price']:.2f} "
                f"(${deal['savings']:.2f} / {deal['percentage']:.2f}% below target)"
            )

    if summary.upcoming_trips:
        lines.append("")
        lines.append("Upcoming trips:")
        for trip in summary.upcoming_trips:
            lines.append(
                f"  {trip['route']} on {trip['travel_date'].isoformat()} "
                f"(target ${trip['target_price']:.2f})"
            )

    return "\n".join(lines)
