"""Tests for the APScheduler job setup."""

from pricewatch.worker.scheduler import setup_scheduler
from pricewatch.worker.tasks import TaskRunner


class StubLockManager:
    async def close(self):
        pass


def test_every_sweep_is_an_independent_job():
    runner = TaskRunner(lock_manager=StubLockManager())

    scheduler = setup_scheduler(runner)
    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {
        "watch_check",
        "ingest_processing",
        "quality_rescore",
        "cleanup",
        "weekly_digest",
    }
    assert jobs["watch_check"].func == runner.check_due_watches
    assert jobs["weekly_digest"].func == runner.send_weekly_digests
    assert all(job.max_instances == 1 and job.coalesce for job in jobs.values())
