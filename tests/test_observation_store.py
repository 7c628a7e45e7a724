"""Tests for provider record ingestion and the observation store."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from pricewatch.db.models import PriceObservation, ProviderRecord, ValidationStatus
from pricewatch.ingest.base import RawProviderRecord
from pricewatch.ingest.observation_store import IngestError, PriceObservationStore


def raw_record(
    flight_identifier="AZ611-20250301",
    provider="kayak",
    route="LAX to FLR",
    price="1450",
    departure="2025-03-01T10:00:00",
    arrival="2025-03-01T22:30:00",
    captured_at=None,
    **pricing,
):
    schedule = {"departure_time": departure, "arrival_time": arrival, "flight_number": "AZ611"}
    return RawProviderRecord(
        flight_identifier=flight_identifier,
        provider=provider,
        route=route,
        schedule=schedule,
        pricing={"price": price, **pricing},
        captured_at=captured_at,
    )


@pytest.fixture
def store():
    return PriceObservationStore()


@pytest.mark.asyncio
async def test_ingest_round_trip_preserves_route_and_price(db_session, store):
    record_id = await store.ingest(db_session, raw_record(price="1450.005", currency="eur"))

    record = await store.get_record(db_session, record_id)
    assert record.route == "LAX-FLR"
    assert record.provider == "kayak"
    assert Decimal(record.pricing["price"]) == Decimal("1450.01")
    assert record.pricing["currency"] == "EUR"
    assert record.pricing["booking_class"] == "economy"
    assert record.validation_status == ValidationStatus.PENDING
    assert record.captured_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "record",
    [
        RawProviderRecord("X1", "kayak", "LAX-FLR", schedule=None, pricing={"price": 100}),
        RawProviderRecord("X2", "kayak", "LAX-FLR", schedule={}, pricing=None),
        RawProviderRecord("X3", "kayak", "LAX-FLR", schedule={}, pricing={"currency": "USD"}),
        RawProviderRecord("X4", "kayak", "LAX-FLR", schedule={}, pricing={"price": "-20"}),
        RawProviderRecord("X5", "kayak", "  ", schedule={}, pricing={"price": 100}),
        RawProviderRecord("", "kayak", "LAX-FLR", schedule={}, pricing={"price": 100}),
    ],
)
async def test_malformed_records_are_rejected_and_not_stored(db_session, store, record):
    with pytest.raises(IngestError):
        await store.ingest(db_session, record)

    result = await db_session.execute(select(ProviderRecord))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_reingest_refreshes_existing_record(db_session, store):
    first_id = await store.ingest(db_session, raw_record(price="1450"))
    second_id = await store.ingest(db_session, raw_record(price="1390"))

    assert first_id == second_id
    record = await store.get_record(db_session, first_id)
    assert Decimal(record.pricing["price"]) == Decimal("1390.00")


@pytest.mark.asyncio
async def test_matching_records_share_group_of_oldest(db_session, store):
    now = datetime.utcnow()
    first = await store.ingest(
        db_session, raw_record("A", "kayak", captured_at=now - timedelta(minutes=20))
    )
    second = await store.ingest(
        db_session, raw_record("B", "expedia", route="LAX -> FLR", captured_at=now)
    )
    other_flight = await store.ingest(
        db_session, raw_record("C", "kayak", departure="2025-03-02T10:00:00", captured_at=now)
    )

    records = {r.id: r for r in (await db_session.execute(select(ProviderRecord))).scalars()}
    assert records[first].duplicate_group_id == first
    assert records[second].duplicate_group_id == first
    assert records[other_flight].duplicate_group_id == other_flight


@pytest.mark.asyncio
async def test_merge_group_keeps_most_recent_valid_record(db_session, store):
    """Scenario: three duplicates, the most recent valid one wins."""
    now = datetime.utcnow()
    members = [
        ("A", now - timedelta(minutes=30), ValidationStatus.VALID),
        ("B", now - timedelta(minutes=10), ValidationStatus.VALID),
        ("C", now - timedelta(minutes=5), ValidationStatus.SUSPICIOUS),
    ]
    ids = {}
    for identifier, captured_at, _ in members:
        ids[identifier] = await store.ingest(
            db_session, raw_record(identifier, captured_at=captured_at)
        )
    for identifier, _, status in members:
        record = await store.get_record(db_session, ids[identifier])
        record.validation_status = status
    await db_session.commit()

    groups = await store.find_duplicate_groups(db_session, route="LAX-FLR")
    assert groups == [ids["A"]]

    canonical = await store.merge_group(db_session, ids["A"])
    assert canonical.id == ids["B"]

    for identifier in ("A", "C"):
        record = await store.get_record(db_session, ids[identifier])
        assert record.validation_status == ValidationStatus.INVALID
        assert record.canonical_id == ids["B"]
    winner = await store.get_record(db_session, ids["B"])
    assert winner.validation_status == ValidationStatus.VALID
    assert winner.canonical_id is None

    assert await store.find_duplicate_groups(db_session) == []
    assert await store.merge_group(db_session, ids["A"]) is None


@pytest.mark.asyncio
async def test_merge_group_falls_back_to_most_recent_record(db_session, store):
    now = datetime.utcnow()
    older = await store.ingest(db_session, raw_record("A", captured_at=now - timedelta(minutes=9)))
    newer = await store.ingest(db_session, raw_record("B", captured_at=now))

    canonical = await store.merge_group(db_session, older)
    assert canonical.id == newer


@pytest.mark.asyncio
async def test_detect_anomalies_flags_price_duration_and_format(db_session, store):
    ids = [
        await store.ingest(db_session, raw_record("cheap", price="5")),
        await store.ingest(
            db_session, raw_record("long", departure="2025-03-01T00:00:00", arrival="2025-03-03T00:00:00")
        ),
        await store.ingest(db_session, raw_record("garbled", arrival="late evening")),
        await store.ingest(db_session, raw_record("fine")),
    ]
    records = [await store.get_record(db_session, record_id) for record_id in ids]

    flags = store.detect_anomalies(records)
    by_record = {(f.record_id, f.type) for f in flags}

    assert (ids[0], "extreme_price") in by_record
    assert (ids[1], "unusual_duration") in by_record
    assert (ids[2], "invalid_time_format") in by_record
    assert not any(f.record_id == ids[3] for f in flags)
    # Advisory only
    assert all(r.validation_status == ValidationStatus.PENDING for r in records)


@pytest.mark.asyncio
async def test_process_pending_promotes_canonical_records(db_session, store):
    now = datetime.utcnow()
    await store.ingest(db_session, raw_record("A", "kayak", price="1450", captured_at=now - timedelta(minutes=5)))
    await store.ingest(db_session, raw_record("B", "kayak", price="1400", captured_at=now))
    await store.ingest(db_session, raw_record("C", "kayak", price="3", departure="2025-03-05T10:00:00"))

    stats = await store.process_pending(db_session)

    assert stats["validated"] == 3
    assert stats["merged"] == 1
    observations = (await db_session.execute(select(PriceObservation))).scalars().all()
    by_date = {o.travel_date: o for o in observations}
    assert by_date[date(2025, 3, 1)].price == Decimal("1400.00")
    assert by_date[date(2025, 3, 1)].validation_status == ValidationStatus.VALID
    assert by_date[date(2025, 3, 5)].validation_status == ValidationStatus.SUSPICIOUS
    assert by_date[date(2025, 3, 5)].quality_score == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_latest_price_returns_lowest_fresh_valid_observation(db_session, store):
    travel = date.today() + timedelta(days=40)
    await store.record_observation(db_session, "LAX-FLR", travel, "kayak", "520")
    await store.record_observation(db_session, "LAX-FLR", travel, "expedia", "480")
    await store.record_observation(
        db_session, "LAX-FLR", travel, "orbitz", "300", validation_status=ValidationStatus.SUSPICIOUS
    )
    await store.record_observation(
        db_session, "LAX-FLR", travel, "google", "250",
        captured_at=datetime.utcnow() - timedelta(hours=12),
    )

    latest = await store.latest_price(db_session, "LAX-FLR", travel_date=travel)
    assert latest.provider == "expedia"
    assert latest.price == Decimal("480.00")

    assert await store.latest_price(db_session, "JFK-LHR") is None


@pytest.mark.asyncio
async def test_purge_older_than(db_session, store):
    now = datetime.utcnow()
    await store.ingest(db_session, raw_record("old", captured_at=now - timedelta(hours=30)))
    await store.ingest(db_session, raw_record("new", captured_at=now))

    assert await store.purge_older_than(db_session, now - timedelta(hours=24)) == 1
    remaining = (await db_session.execute(select(ProviderRecord))).scalars().all()
    assert [r.flight_identifier for r in remaining] == ["new"]

    travel = date.today()
    await store.record_observation(
        db_session, "LAX-FLR", travel, "kayak", "500", captured_at=now - timedelta(days=100)
    )
    assert await store.purge_observations_older_than(db_session, now - timedelta(days=90)) == 1


@pytest.mark.asyncio
async def test_data_quality_summary(db_session, store):
    await store.ingest(db_session, raw_record("A", price="500"))
    await store.ingest(
        db_session,
        raw_record("B", price="5", departure="2025-04-01T10:00:00", arrival="2025-04-01T20:00:00"),
    )
    await store.ingest(
        db_session,
        raw_record(
            "C", provider="expedia", departure="2025-05-01T10:00:00", arrival="2025-05-01T20:00:00"
        ),
    )
    await store.validate_pending(db_session)

    summary = await store.data_quality_summary(db_session)
    assert summary["total"] == 3
    assert summary["valid"] == 2
    assert summary["suspicious"] == 1
    assert summary["quality_percentage"] == 66.67

    kayak = await store.data_quality_summary(db_session, provider="kayak")
    assert kayak["total"] == 2
