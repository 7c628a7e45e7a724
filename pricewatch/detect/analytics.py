"""Route price analytics over price observations.

Statistics are computed over valid, high-quality observations. Trend and
volatility look at observations whose travel date falls in the last N days;
anomaly detection and per-check price context look at observations captured
in the last N days. Variance is population variance; percentages are rounded
to two places.
"""

import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.db.models import PriceObservation, ValidationStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class PriceContext:
    """How a price compares with recent prices on its route."""

    route: str
    price: Decimal
    average_price: Optional[Decimal]
    lowest_price: Optional[Decimal]
    volatility: float
    observation_count: int
    is_outlier: bool                    # |z| above threshold against the window

    @property
    def below_average_pct(self) -> Optional[float]:
        if not self.average_price:
            return None
        return float(((self.average_price - self.price) / self.average_price * 100).quantize(
            CENT, rounding=ROUND_HALF_UP
        ))


def coefficient_of_variation(prices: Sequence[Decimal]) -> float:
    """
    Population coefficient of variation as a percentage, 2 places.

    Returns 0.0 with fewer than two prices.
    """
    if len(prices) < 2:
        return 0.0
    values = [float(p) for p in prices]
    mean = statistics.fmean(values)
    if mean <= 0:
        return 0.0
    cv = statistics.pstdev(values) / mean * 100
    return float(Decimal(str(cv)).quantize(CENT, rounding=ROUND_HALF_UP))


def zscore_outliers(
    prices: Sequence[Decimal],
    z_threshold: float,
    min_observations: int = 5,
) -> List[Decimal]:
    """Prices whose population z-score magnitude exceeds the threshold."""
    if len(prices) < min_observations:
        return []
    values = np.array([float(p) for p in prices])
    std = float(np.std(values))
    if std == 0:
        return []
    z_scores = np.abs(values - np.mean(values)) / std
    return [price for price, z in zip(prices, z_scores) if z > z_threshold]


class PriceAnalytics:
    """
    Route-level price statistics.

    Only valid observations with a quality score at or above the configured
    minimum are counted.
    """

    def __init__(
        self,
        window_days: Optional[int] = None,
        min_quality: Optional[float] = None,
        z_threshold: Optional[float] = None,
        min_observations: Optional[int] = None,
    ):
        self.window_days = window_days or settings.analytics_window_days
        self.min_quality = min_quality if min_quality is not None else settings.analytics_min_quality
        self.z_threshold = z_threshold or settings.anomaly_z_threshold
        self.min_observations = min_observations or settings.anomaly_min_observations

    def _scope(
        self,
        query,
        route: str,
        date_range: Optional[Tuple[date, date]] = None,
        provider: Optional[str] = None,
        window_days: Optional[int] = None,
    ):
        query = query.where(
            PriceObservation.route == route,
            PriceObservation.validation_status == ValidationStatus.VALID,
            PriceObservation.quality_score >= self.min_quality,
        )
        if date_range is not None:
            start, end = date_range
            query = query.where(PriceObservation.travel_date.between(start, end))
        if provider is not None:
            query = query.where(PriceObservation.provider == provider)
        if window_days is not None:
            cutoff = datetime.utcnow() - timedelta(days=window_days)
            query = query.where(PriceObservation.captured_at >= cutoff)
        return query

    def _travel_window(self, window_days: Optional[int] = None) -> Tuple[date, date]:
        """Travel dates from N days ago up to today."""
        today = datetime.utcnow().date()
        return today - timedelta(days=window_days or self.window_days), today

    async def window_prices(
        self,
        db: AsyncSession,
        route: str,
        window_days: Optional[int] = None,
    ) -> List[Decimal]:
        """Prices on a route captured within the window."""
        result = await db.execute(
            self._scope(
                select(PriceObservation.price),
                route,
                window_days=window_days or self.window_days,
            )
        )
        return [Decimal(str(price)) for price in result.scalars().all()]

    async def average_price(
        self,
        db: AsyncSession,
        route: str,
        date_range: Optional[Tuple[date, date]] = None,
        provider: Optional[str] = None,
    ) -> Optional[Decimal]:
        """
        Average price for a route.

        Args:
            db: Database session
            route: Normalized route
            date_range: Optional inclusive (start, end) travel dates
            provider: Limit to one provider

        Returns:
            Average rounded to cents, or None without observations
        """
        result = await db.execute(
            self._scope(select(func.avg(PriceObservation.price)), route, date_range, provider)
        )
        average = result.scalar()
        if average is None:
            return None
        return Decimal(str(average)).quantize(CENT, rounding=ROUND_HALF_UP)

    async def lowest_price(
        self,
        db: AsyncSession,
        route: str,
        date_range: Optional[Tuple[date, date]] = None,
    ) -> Optional[Decimal]:
        result = await db.execute(
            self._scope(select(func.min(PriceObservation.price)), route, date_range)
        )
        lowest = result.scalar()
        return Decimal(str(lowest)) if lowest is not None else None

    async def highest_price(
        self,
        db: AsyncSession,
        route: str,
        date_range: Optional[Tuple[date, date]] = None,
    ) -> Optional[Decimal]:
        result = await db.execute(
            self._scope(select(func.max(PriceObservation.price)), route, date_range)
        )
        highest = result.scalar()
        return Decimal(str(highest)) if highest is not None else None

    async def trend(
        self,
        db: AsyncSession,
        route: str,
        window_days: Optional[int] = None,
    ) -> List[dict]:
        """
        Average price per travel date over the last N days, oldest first.

        Returns:
            List of {"date": date, "average_price": Decimal}
        """
        result = await db.execute(
            self._scope(
                select(PriceObservation.travel_date, PriceObservation.price),
                route,
                date_range=self._travel_window(window_days),
            )
        )

        by_day = defaultdict(list)
        for travel_date, price in result.all():
            by_day[travel_date].append(Decimal(str(price)))

        return [
            {
                "date": day,
                "average_price": (sum(prices) / len(prices)).quantize(CENT, rounding=ROUND_HALF_UP),
            }
            for day, prices in sorted(by_day.items())
        ]

    async def volatility(
        self,
        db: AsyncSession,
        route: str,
        window_days: Optional[int] = None,
    ) -> float:
        """Coefficient of variation (%) over the last N travel days; 0 with < 2 prices."""
        result = await db.execute(
            self._scope(
                select(PriceObservation.price),
                route,
                date_range=self._travel_window(window_days),
            )
        )
        prices = [Decimal(str(price)) for price in result.scalars().all()]
        return coefficient_of_variation(prices)

    async def anomalous_prices(
        self,
        db: AsyncSession,
        route: str,
        z_threshold: Optional[float] = None,
    ) -> List[Decimal]:
        """Prices more than z_threshold population deviations from the window mean."""
        prices = await self.window_prices(db, route)
        return zscore_outliers(prices, z_threshold or self.z_threshold, self.min_observations)

    async def price_context(
        self,
        db: AsyncSession,
        route: str,
        price: Decimal,
    ) -> PriceContext:
        """
        Describe a price against the route's recent history.

        Used to enrich alert content only.
        """
        prices = await self.window_prices(db, route)
        average = None
        if prices:
            average = (sum(prices) / len(prices)).quantize(CENT, rounding=ROUND_HALF_UP)

        is_outlier = False
        if len(prices) >= self.min_observations:
            values = np.array([float(p) for p in prices])
            std = float(np.std(values))
            if std > 0:
                z_score = abs(float(price) - float(np.mean(values))) / std
                is_outlier = z_score > self.z_threshold

        return PriceContext(
            route=route,
            price=price,
            average_price=average,
            lowest_price=min(prices) if prices else None,
            volatility=coefficient_of_variation(prices),
            observation_count=len(prices),
            is_outlier=is_outlier,
        )


price_analytics = PriceAnalytics()
