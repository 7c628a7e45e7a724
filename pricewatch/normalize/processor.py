"""Normalize raw provider values into canonical forms."""

import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# "LAX to JFK", "LAX -> JFK", "LAX → JFK", "LAX – JFK", "LAX - JFK"
ROUTE_SEPARATOR = re.compile(r"\s*(?:\bto\b|->|→|–|—|-)\s*", re.IGNORECASE)
REPEATED_DASHES = re.compile(r"-{2,}")
CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")
PRICE_NOISE = re.compile(r"[\s,$€£]")


class NormalizationError(ValueError):
    """Raised when a raw value cannot be normalized."""

    pass


def normalize_route(route: str | None) -> str:
    """
    Canonicalize a route string.

    Trims, collapses whitespace and rewrites every separator form to a single
    dash, keeping direction (origin first).

    Raises:
        NormalizationError: If the route is empty
    """
    if route is None or not route.strip():
        raise NormalizationError("Route is empty")

    collapsed = " ".join(route.split())
    canonical = ROUTE_SEPARATOR.sub("-", collapsed)
    canonical = REPEATED_DASHES.sub("-", canonical).strip("-")

    if not canonical:
        raise NormalizationError(f"Route {route!r} has no endpoints")
    return canonical


def normalize_price(value) -> Decimal:
    """
    Coerce a provider price to a positive two-place decimal.

    Accepts numbers and strings such as "1,234.50" or "$99".

    Raises:
        NormalizationError: If the price is missing, malformed or not positive
    """
    if value is None or isinstance(value, bool):
        raise NormalizationError("Price is missing")

    if isinstance(value, str):
        value = PRICE_NOISE.sub("", value)
        if not value:
            raise NormalizationError("Price is empty")

    try:
        price = Decimal(str(value))
    except InvalidOperation as e:
        raise NormalizationError(f"Price {value!r} is not a number") from e

    if not price.is_finite():
        raise NormalizationError(f"Price {value!r} is not finite")

    price = price.quantize(CENT, rounding=ROUND_HALF_UP)
    if price <= 0:
        raise NormalizationError(f"Price {price} must be positive")
    return price


def normalize_currency(value: str | None, default: str = "USD") -> str:
    """Uppercase a currency code, falling back to the default."""
    if value is None or not str(value).strip():
        return default

    currency = str(value).strip().upper()
    if not CURRENCY_CODE.match(currency):
        raise NormalizationError(f"Invalid currency code {value!r}")
    return currency


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into a naive UTC datetime.

    Returns None when the value is missing or unparseable.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def canonical_timestamp(value: str | None) -> str | None:
    """Rewrite a parseable timestamp as ISO-8601, keeping unparseable input verbatim."""
    if value is None:
        return None
    parsed = parse_timestamp(value)
    if parsed is None:
        logger.debug(f"Keeping unparseable schedule timestamp {value!r}")
        return value
    return parsed.isoformat()
