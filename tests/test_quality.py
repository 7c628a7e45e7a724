"""Tests for watch and observation quality scoring."""

from datetime import datetime, timedelta

import pytest

from pricewatch.db.models import NotificationRecord, ValidationStatus, Watch, WatchStatus
from pricewatch.detect.quality import QualityScorer

NOW = datetime(2025, 3, 1, 12, 0)


@pytest.fixture
def scorer():
    return QualityScorer(stale_after=timedelta(days=7))


def build_watch(status=WatchStatus.ACTIVE, failed=0, succeeded=0, last_checked_at=NOW):
    watch = Watch(id=1, status=status, last_checked_at=last_checked_at, created_at=NOW)
    watch.notifications = [
        NotificationRecord(method="email", kind="price_drop", content="", success=False)
        for _ in range(failed)
    ] + [
        NotificationRecord(method="email", kind="price_drop", content="", success=True)
        for _ in range(succeeded)
    ]
    return watch


class TestWatchScore:
    """Watch score adjustments."""

    def test_fresh_watch_scores_full(self, scorer):
        assert scorer.watch_score(build_watch(), NOW) == 1.0

    def test_failed_notifications_lower_score(self, scorer):
        assert scorer.watch_score(build_watch(failed=3, succeeded=2), NOW) == pytest.approx(0.85)

    def test_stale_active_watch(self, scorer):
        watch = build_watch(last_checked_at=NOW - timedelta(days=8))
        assert scorer.watch_score(watch, NOW) == pytest.approx(0.8)

    def test_triggered_bonus_is_capped(self, scorer):
        assert scorer.watch_score(build_watch(status=WatchStatus.TRIGGERED), NOW) == 1.0
        watch = build_watch(status=WatchStatus.TRIGGERED, failed=2)
        assert scorer.watch_score(watch, NOW) == pytest.approx(1.0)

    def test_score_never_below_floor(self, scorer):
        assert scorer.watch_score(build_watch(failed=40), NOW) == pytest.approx(0.1)

    def test_rescoring_is_idempotent(self, scorer):
        watch = build_watch(failed=3)
        first = scorer.rescore_watch(watch, NOW)
        second = scorer.rescore_watch(watch, NOW)
        assert first == second == pytest.approx(0.85)


class TestObservationScore:
    """Observation score adjustments."""

    def test_fresh_valid(self, scorer):
        assert scorer.observation_score(ValidationStatus.VALID, NOW, NOW) == 1.0

    def test_suspicious(self, scorer):
        assert scorer.observation_score(ValidationStatus.SUSPICIOUS, NOW, NOW) == pytest.approx(0.7)

    def test_only_larger_age_penalty_applies(self, scorer):
        two_hours = NOW - timedelta(hours=2)
        two_days = NOW - timedelta(days=2)
        assert scorer.observation_score(ValidationStatus.VALID, two_hours, NOW) == pytest.approx(0.95)
        assert scorer.observation_score(ValidationStatus.VALID, two_days, NOW) == pytest.approx(0.9)
        assert scorer.observation_score(ValidationStatus.SUSPICIOUS, two_days, NOW) == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_rescore_all_skips_terminal_watches(db_session, make_watch, scorer):
    now = datetime.utcnow()
    stale = await make_watch(db_session, last_checked_at=now - timedelta(days=10))
    cancelled = await make_watch(
        db_session, status=WatchStatus.CANCELLED, last_checked_at=now - timedelta(days=10)
    )

    stats = await scorer.rescore_all(db_session, batch_size=1, now=now)

    assert stats["watches"] == 1
    assert stats["watches_changed"] == 1
    stale = await db_session.get(Watch, stale.id)
    cancelled = await db_session.get(Watch, cancelled.id)
    assert stale.quality_score == pytest.approx(0.8)
    assert cancelled.quality_score == 1.0

    again = await scorer.rescore_all(db_session, batch_size=1, now=now)
    assert again["watches_changed"] == 0
