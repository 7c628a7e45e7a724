"""Tests for route price analytics."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from pricewatch.db.models import ValidationStatus
from pricewatch.detect.analytics import PriceAnalytics, coefficient_of_variation, zscore_outliers
from pricewatch.ingest.observation_store import PriceObservationStore

SCENARIO_PRICES = ["1450", "1380", "1520", "1400", "1390"]


@pytest.fixture
def store():
    return PriceObservationStore()


@pytest.fixture
def analytics():
    return PriceAnalytics(window_days=30, min_quality=0.8, z_threshold=2.0, min_observations=5)


def utc_today():
    return datetime.utcnow().date()


async def seed(db, store, prices, route="LAX-FLR", captured_at=None, start=None, **kwargs):
    """One observation per travel date so none of them overwrite each other."""
    start = start or utc_today() - timedelta(days=10)
    for offset, price in enumerate(prices):
        await store.record_observation(
            db, route, start + timedelta(days=offset), "kayak", price, captured_at=captured_at, **kwargs
        )


def test_coefficient_of_variation_matches_hand_computation():
    # mean 1428, population stddev 51.92
    assert coefficient_of_variation([Decimal(p) for p in SCENARIO_PRICES]) == 3.64


def test_coefficient_of_variation_needs_two_prices():
    assert coefficient_of_variation([]) == 0.0
    assert coefficient_of_variation([Decimal("1450")]) == 0.0


def test_zscore_outliers_requires_minimum_observations():
    prices = [Decimal("500")] * 3 + [Decimal("1500")]
    assert zscore_outliers(prices, 2.0, min_observations=5) == []
    assert zscore_outliers([Decimal("500")] * 6, 2.0) == []


@pytest.mark.asyncio
async def test_volatility_over_window(db_session, store, analytics):
    await seed(db_session, store, SCENARIO_PRICES)

    assert await analytics.volatility(db_session, "LAX-FLR") == 3.64


@pytest.mark.asyncio
async def test_volatility_ignores_low_quality_and_out_of_window_dates(db_session, store, analytics):
    await seed(db_session, store, SCENARIO_PRICES)
    await seed(
        db_session, store, ["9000"], start=utc_today() - timedelta(days=2),
        validation_status=ValidationStatus.SUSPICIOUS,
    )
    await seed(db_session, store, ["10"], start=utc_today() - timedelta(days=40))
    await seed(db_session, store, ["20"], start=utc_today() + timedelta(days=30))

    assert await analytics.volatility(db_session, "LAX-FLR") == 3.64
    assert await analytics.volatility(db_session, "LAX-FLR", window_days=3) == 0.0
    assert await analytics.volatility(db_session, "JFK-LHR") == 0.0


@pytest.mark.asyncio
async def test_average_lowest_and_highest(db_session, store, analytics):
    start = utc_today() - timedelta(days=10)
    await seed(db_session, store, SCENARIO_PRICES, start=start)

    assert await analytics.average_price(db_session, "LAX-FLR") == Decimal("1428.00")
    assert await analytics.lowest_price(db_session, "LAX-FLR") == Decimal("1380")
    assert await analytics.highest_price(db_session, "LAX-FLR") == Decimal("1520")

    first_two = (start, start + timedelta(days=1))
    assert await analytics.average_price(db_session, "LAX-FLR", date_range=first_two) == Decimal("1415.00")
    assert await analytics.average_price(db_session, "LAX-FLR", provider="expedia") is None
    assert await analytics.average_price(db_session, "JFK-LHR") is None


@pytest.mark.asyncio
async def test_trend_groups_by_travel_date(db_session, store, analytics):
    now = datetime.utcnow()
    first = utc_today() - timedelta(days=5)
    second = first + timedelta(days=1)
    # Captured at the same moment, for two different travel dates
    await store.record_observation(db_session, "LAX-FLR", first, "kayak", "400", captured_at=now)
    await store.record_observation(db_session, "LAX-FLR", first, "expedia", "500", captured_at=now)
    await store.record_observation(db_session, "LAX-FLR", second, "kayak", "600", captured_at=now)
    await store.record_observation(
        db_session, "LAX-FLR", utc_today() - timedelta(days=45), "kayak", "900", captured_at=now
    )

    trend = await analytics.trend(db_session, "LAX-FLR")

    assert [point["date"] for point in trend] == [first, second]
    assert [point["average_price"] for point in trend] == [Decimal("450.00"), Decimal("600.00")]


@pytest.mark.asyncio
async def test_anomalous_prices(db_session, store, analytics):
    await seed(db_session, store, ["500"] * 7 + ["1500"])

    assert await analytics.anomalous_prices(db_session, "LAX-FLR") == [Decimal("1500")]


@pytest.mark.asyncio
async def test_price_context(db_session, store, analytics):
    await seed(db_session, store, SCENARIO_PRICES)

    context = await analytics.price_context(db_session, "LAX-FLR", Decimal("1300"))

    assert context.average_price == Decimal("1428.00")
    assert context.lowest_price == Decimal("1380")
    assert context.observation_count == 5
    assert context.volatility == 3.64
    assert context.below_average_pct == 8.96
    assert context.is_outlier is True
