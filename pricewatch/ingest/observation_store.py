"""Provider record ingestion, duplicate merging and price observations.

Raw provider records are normalized at the boundary, grouped with records
that describe the same flight, validated, merged so each group keeps one
canonical record, and promoted into PriceObservation rows that the
analytics and alert evaluation read.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import PriceObservation, ProviderRecord, ValidationStatus
from pricewatch.detect.quality import quality_scorer
from pricewatch.ingest.base import PricingInfo, RawProviderRecord, ScheduleInfo
from pricewatch.normalize.processor import (
    NormalizationError,
    normalize_currency,
    normalize_route,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class IngestError(Exception):
    """Raised when a provider record is malformed and cannot be stored."""

    pass


@dataclass
class AnomalyFlag:
    """Advisory finding about a provider record."""

    record_id: int
    type: str          # extreme_price, unusual_duration, invalid_time_format
    value: object
    details: str


def record_price(record: ProviderRecord) -> Optional[Decimal]:
    price = record.pricing.get("price")
    return Decimal(str(price)) if price is not None else None


def record_travel_date(record: ProviderRecord) -> date:
    """Departure date from the schedule, falling back to the capture date."""
    departure = parse_timestamp(record.schedule.get("departure_time"))
    return departure.date() if departure else record.captured_at.date()


def build_group_key(route: str, schedule: ScheduleInfo) -> Optional[str]:
    """
    Key shared by records that describe the same flight.

    Records without a parseable departure time cannot be matched.
    """
    departure = parse_timestamp(schedule.departure_time)
    if departure is None:
        return None
    key = f"{route}|{departure.strftime('%Y-%m-%dT%H:%M')}"
    if schedule.flight_number:
        key += f"|{schedule.flight_number}"
    return key


class PriceObservationStore:
    """Store operations for provider records and price observations."""

    def __init__(
        self,
        duplicate_window: Optional[timedelta] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
    ):
        self.duplicate_window = duplicate_window or timedelta(
            minutes=settings.duplicate_window_minutes
        )
        self.min_price = min_price or Decimal(str(settings.anomaly_min_price))
        self.max_price = max_price or Decimal(str(settings.anomaly_max_price))
        self.min_duration_hours = settings.anomaly_min_duration_hours
        self.max_duration_hours = settings.anomaly_max_duration_hours

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def normalize(self, raw: RawProviderRecord) -> dict:
        """
        Normalize a raw record into column values.

        Raises:
            IngestError: If required fields are missing or malformed
        """
        if not raw.flight_identifier or not str(raw.flight_identifier).strip():
            raise IngestError("Flight identifier is required")
        if not raw.provider or not raw.provider.strip():
            raise IngestError("Provider is required")
        if raw.schedule is None:
            raise IngestError(f"Schedule payload missing for {raw.flight_identifier}")
        if raw.pricing is None:
            raise IngestError(f"Pricing payload missing for {raw.flight_identifier}")

        try:
            route = normalize_route(raw.route)
            schedule = ScheduleInfo.model_validate(raw.schedule)
            pricing = PricingInfo.model_validate(raw.pricing)
            currency = normalize_currency(pricing.currency, settings.default_currency)
        except (NormalizationError, ValidationError) as e:
            raise IngestError(f"Invalid record {raw.flight_identifier}: {e}") from e

        return {
            "flight_identifier": str(raw.flight_identifier).strip(),
            "provider": raw.provider.strip().lower(),
            "route": route,
            "schedule": schedule.model_dump(mode="json", exclude_none=True),
            "pricing": {
                "price": str(pricing.price),
                "currency": currency,
                "booking_class": (pricing.booking_class or settings.default_booking_class).lower(),
            },
            "captured_at": raw.captured_at or datetime.utcnow(),
            "group_key": build_group_key(route, schedule),
        }

    async def ingest(self, db: AsyncSession, raw: RawProviderRecord) -> int:
        """
        Normalize and store a provider record.

        Re-ingesting a known (provider, flight identifier) refreshes that
        record in place and sends it back through validation.

        Returns:
            ProviderRecord id

        Raises:
            IngestError: If the record is malformed (nothing is stored)
        """
        try:
            values = self.normalize(raw)
        except IngestError:
            metrics.record_ingest(raw.provider or "unknown", accepted=False)
            raise

        result = await db.execute(
            select(ProviderRecord).where(
                ProviderRecord.provider == values["provider"],
                ProviderRecord.flight_identifier == values["flight_identifier"],
            )
        )
        record = result.scalar_one_or_none()

        if record is None:
            record = ProviderRecord(validation_status=ValidationStatus.PENDING, **values)
            db.add(record)
            await db.flush()
        else:
            for key, value in values.items():
                setattr(record, key, value)
            record.validation_status = ValidationStatus.PENDING
            record.canonical_id = None

        if raw.duplicate_group_id is not None:
            record.duplicate_group_id = raw.duplicate_group_id
        elif record.duplicate_group_id is None:
            record.duplicate_group_id = await self._assign_group(db, record)

        await db.commit()
        metrics.record_ingest(record.provider, accepted=True)
        logger.debug(
            f"Ingested {record.provider}:{record.flight_identifier} "
            f"route={record.route} group={record.duplicate_group_id}"
        )
        return record.id

    async def _assign_group(self, db: AsyncSession, record: ProviderRecord) -> int:
        """Join the group of the oldest matching record in the window, else start one."""
        if record.group_key is None:
            return record.id

        result = await db.execute(
            select(ProviderRecord)
            .where(
                ProviderRecord.group_key == record.group_key,
                ProviderRecord.id != record.id,
                ProviderRecord.captured_at >= record.captured_at - self.duplicate_window,
            )
            .order_by(ProviderRecord.id.asc())
            .limit(1)
        )
        match = result.scalar_one_or_none()
        if match is None:
            return record.id
        return match.duplicate_group_id or match.id

    async def get_record(self, db: AsyncSession, record_id: int) -> Optional[ProviderRecord]:
        return await db.get(ProviderRecord, record_id)

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------

    async def find_duplicate_groups(
        self,
        db: AsyncSession,
        route: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> List[int]:
        """Group ids with more than one unmerged member."""
        query = (
            select(ProviderRecord.duplicate_group_id)
            .where(
                ProviderRecord.duplicate_group_id.is_not(None),
                ProviderRecord.canonical_id.is_(None),
            )
            .group_by(ProviderRecord.duplicate_group_id)
            .having(func.count(ProviderRecord.id) > 1)
            .order_by(ProviderRecord.duplicate_group_id)
        )
        if route is not None:
            query = query.where(ProviderRecord.route == normalize_route(route))
        if provider is not None:
            query = query.where(ProviderRecord.provider == provider.lower())

        result = await db.execute(query)
        return [row[0] for row in result.all()]

    async def merge_group(self, db: AsyncSession, group_id: int) -> Optional[ProviderRecord]:
        """
        Collapse a duplicate group onto one canonical record.

        The most recently captured valid record wins, falling back to the most
        recent record of any status. Other members point at the winner and
        are marked invalid. Group rows stay locked until commit.

        Returns:
            Canonical record, or None if the group has fewer than 2 members
        """
        result = await db.execute(
            select(ProviderRecord)
            .where(
                ProviderRecord.duplicate_group_id == group_id,
                ProviderRecord.canonical_id.is_(None),
            )
            .order_by(ProviderRecord.captured_at.asc(), ProviderRecord.id.asc())
            .with_for_update()
        )
        members = list(result.scalars().all())

        if len(members) < 2:
            await db.commit()
            return None

        valid = [m for m in members if m.validation_status == ValidationStatus.VALID]
        canonical = (valid or members)[-1]

        for member in members:
            if member.id == canonical.id:
                continue
            member.canonical_id = canonical.id
            member.validation_status = ValidationStatus.INVALID

        await db.commit()
        metrics.duplicate_groups_merged_total.inc()
        logger.info(
            f"Merged duplicate group {group_id}: kept record {canonical.id}, "
            f"invalidated {len(members) - 1}"
        )
        return canonical

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def detect_anomalies(self, records: Iterable[ProviderRecord]) -> List[AnomalyFlag]:
        """
        Flag records with implausible prices or schedules. Read-only.
        """
        anomalies = []

        for record in records:
            price = record_price(record)
            if price is not None and (price < self.min_price or price > self.max_price):
                anomalies.append(AnomalyFlag(
                    record_id=record.id,
                    type="extreme_price",
                    value=price,
                    details=f"Price {price} seems unusual",
                ))

            departure_raw = record.schedule.get("departure_time")
            arrival_raw = record.schedule.get("arrival_time")
            if not (departure_raw and arrival_raw):
                continue

            departure = parse_timestamp(departure_raw)
            arrival = parse_timestamp(arrival_raw)
            if departure is None or arrival is None:
                anomalies.append(AnomalyFlag(
                    record_id=record.id,
                    type="invalid_time_format",
                    value=f"{departure_raw} - {arrival_raw}",
                    details="Invalid time format",
                ))
                continue

            duration = (arrival - departure).total_seconds() / 3600
            if duration < self.min_duration_hours or duration > self.max_duration_hours:
                anomalies.append(AnomalyFlag(
                    record_id=record.id,
                    type="unusual_duration",
                    value=round(duration, 2),
                    details=f"Flight duration {duration:.2f} hours seems unusual",
                ))

        return anomalies

    async def validate_pending(self, db: AsyncSession, limit: int = 1000) -> List[ProviderRecord]:
        """
        Move pending records to valid, or suspicious when an anomaly is flagged.

        Returns:
            The records that were validated
        """
        result = await db.execute(
            select(ProviderRecord)
            .where(ProviderRecord.validation_status == ValidationStatus.PENDING)
            .order_by(ProviderRecord.id)
            .limit(limit)
        )
        records = list(result.scalars().all())
        if not records:
            return []

        flagged = {flag.record_id for flag in self.detect_anomalies(records)}
        for record in records:
            if record.id in flagged:
                record.validation_status = ValidationStatus.SUSPICIOUS
            else:
                record.validation_status = ValidationStatus.VALID
            metrics.provider_records_validated_total.labels(
                status=record.validation_status
            ).inc()

        await db.commit()
        if flagged:
            logger.warning(f"Flagged {len(flagged)} of {len(records)} provider records as suspicious")
        return records

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    async def promote(self, db: AsyncSession, record: ProviderRecord) -> Optional[PriceObservation]:
        """
        Upsert the price observation for a canonical record.

        Returns:
            The observation, or None if the record is not eligible
        """
        if record.canonical_id is not None or record.validation_status not in (
            ValidationStatus.VALID,
            ValidationStatus.SUSPICIOUS,
        ):
            return None

        travel_date = record_travel_date(record)
        booking_class = record.pricing.get("booking_class", settings.default_booking_class)
        result = await db.execute(
            select(PriceObservation).where(
                PriceObservation.route == record.route,
                PriceObservation.travel_date == travel_date,
                PriceObservation.provider == record.provider,
                PriceObservation.booking_class == booking_class,
            )
        )
        observation = result.scalar_one_or_none()

        if observation is not None and observation.captured_at > record.captured_at:
            # A newer observation already exists
            return observation

        if observation is None:
            observation = PriceObservation(
                route=record.route,
                travel_date=travel_date,
                provider=record.provider,
                booking_class=booking_class,
            )
            db.add(observation)

        observation.price = record_price(record)
        observation.currency = record.pricing.get("currency", settings.default_currency)
        observation.captured_at = record.captured_at
        observation.validation_status = record.validation_status
        observation.source_record_id = record.id
        quality_scorer.rescore_observation(observation)

        await db.commit()
        return observation

    async def record_observation(
        self,
        db: AsyncSession,
        route: str,
        travel_date: date,
        provider: str,
        price,
        booking_class: Optional[str] = None,
        currency: Optional[str] = None,
        captured_at: Optional[datetime] = None,
        validation_status: str = ValidationStatus.VALID,
    ) -> PriceObservation:
        """
        Store an already-validated price point directly.

        Raises:
            IngestError: If route, price or currency are malformed
        """
        raw = RawProviderRecord(
            flight_identifier=f"{route}:{travel_date.isoformat()}",
            provider=provider,
            route=route,
            schedule={},
            pricing={"price": price, "currency": currency, "booking_class": booking_class},
            captured_at=captured_at,
        )
        values = self.normalize(raw)

        result = await db.execute(
            select(PriceObservation).where(
                PriceObservation.route == values["route"],
                PriceObservation.travel_date == travel_date,
                PriceObservation.provider == values["provider"],
                PriceObservation.booking_class == values["pricing"]["booking_class"],
            )
        )
        observation = result.scalar_one_or_none()
        if observation is None:
            observation = PriceObservation(
                route=values["route"],
                travel_date=travel_date,
                provider=values["provider"],
                booking_class=values["pricing"]["booking_class"],
            )
            db.add(observation)

        observation.price = Decimal(values["pricing"]["price"])
        observation.currency = values["pricing"]["currency"]
        observation.captured_at = values["captured_at"]
        observation.validation_status = validation_status
        quality_scorer.rescore_observation(observation)

        await db.commit()
        return observation

    async def latest_price(
        self,
        db: AsyncSession,
        route: str,
        travel_date: Optional[date] = None,
        booking_class: Optional[str] = None,
        max_age: Optional[timedelta] = None,
    ) -> Optional[PriceObservation]:
        """Lowest fresh valid observation for a route (and date/class when given)."""
        max_age = max_age or timedelta(hours=settings.price_max_age_hours)
        cutoff = datetime.utcnow() - max_age

        query = select(PriceObservation).where(
            PriceObservation.route == route,
            PriceObservation.validation_status == ValidationStatus.VALID,
            PriceObservation.captured_at >= cutoff,
        )
        if travel_date is not None:
            query = query.where(PriceObservation.travel_date == travel_date)
        if booking_class is not None:
            query = query.where(PriceObservation.booking_class == booking_class)

        query = query.order_by(
            PriceObservation.price.asc(), PriceObservation.captured_at.desc()
        ).limit(1)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Retention and reporting
    # ------------------------------------------------------------------

    async def purge_older_than(self, db: AsyncSession, cutoff: datetime) -> int:
        """Delete provider records captured before cutoff. Irreversible."""
        result = await db.execute(
            delete(ProviderRecord).where(ProviderRecord.captured_at < cutoff)
        )
        await db.commit()
        count = result.rowcount or 0
        metrics.records_purged_total.labels(table="provider_records").inc(count)
        logger.info(f"Purged {count} provider records captured before {cutoff.isoformat()}")
        return count

    async def purge_observations_older_than(self, db: AsyncSession, cutoff: datetime) -> int:
        """Delete price observations captured before cutoff. Irreversible."""
        result = await db.execute(
            delete(PriceObservation).where(PriceObservation.captured_at < cutoff)
        )
        await db.commit()
        count = result.rowcount or 0
        metrics.records_purged_total.labels(table="price_observations").inc(count)
        logger.info(f"Purged {count} price observations captured before {cutoff.isoformat()}")
        return count

    async def data_quality_summary(
        self,
        db: AsyncSession,
        provider: Optional[str] = None,
        hours: int = 24,
    ) -> dict:
        """Counts of provider records per validation status over the last N hours."""
        since = datetime.utcnow() - timedelta(hours=hours)
        query = (
            select(ProviderRecord.validation_status, func.count(ProviderRecord.id))
            .where(ProviderRecord.captured_at >= since)
            .group_by(ProviderRecord.validation_status)
        )
        if provider is not None:
            query = query.where(ProviderRecord.provider == provider.lower())

        result = await db.execute(query)
        counts = {status: 0 for status in ValidationStatus.ALL}
        counts.update({status: count for status, count in result.all()})

        total = sum(counts.values())
        valid_pct = round(counts[ValidationStatus.VALID] / total * 100, 2) if total else 0.0
        return {
            "total": total,
            "pending": counts[ValidationStatus.PENDING],
            "valid": counts[ValidationStatus.VALID],
            "suspicious": counts[ValidationStatus.SUSPICIOUS],
            "invalid": counts[ValidationStatus.INVALID],
            "quality_percentage": valid_pct,
        }

    async def process_pending(self, db: AsyncSession, limit: int = 1000) -> dict:
        """
        Validate pending records, merge duplicate groups and promote the
        surviving canonical records to observations.
        """
        validated = await self.validate_pending(db, limit=limit)

        winners = []
        for group_id in await self.find_duplicate_groups(db):
            canonical = await self.merge_group(db, group_id)
            if canonical is not None:
                winners.append(canonical)

        candidates = {record.id: record for record in validated}
        candidates.update({record.id: record for record in winners})

        promoted = 0
        for record in candidates.values():
            await db.refresh(record)
            if await self.promote(db, record) is not None:
                promoted += 1

        stats = {"validated": len(validated), "merged": len(winners), "promoted": promoted}
        logger.info(
            f"Processed provider records: {stats['validated']} validated, "
            f"{stats['merged']} groups merged, {stats['promoted']} observations updated"
        )
        return stats


observation_store = PriceObservationStore()
