"""Prometheus metrics for the price watch core."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("pricewatch", "Price watch core application info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Ingestion metrics
provider_records_ingested_total = Counter(
    "provider_records_ingested_total",
    "Provider records accepted or rejected at ingestion",
    ["provider", "status"],
)

provider_records_validated_total = Counter(
    "provider_records_validated_total",
    "Provider records validated, by resulting status",
    ["status"],
)

duplicate_groups_merged_total = Counter(
    "duplicate_groups_merged_total",
    "Duplicate provider record groups merged",
)

records_purged_total = Counter(
    "records_purged_total",
    "Rows removed by retention cleanup",
    ["table"],
)

# Evaluation metrics
watches_checked_total = Counter(
    "watches_checked_total",
    "Watch evaluations by outcome",
    ["outcome"],
)

watch_evaluation_duration_seconds = Histogram(
    "watch_evaluation_duration_seconds",
    "Time spent evaluating a single watch",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0],
)

alerts_triggered_total = Counter(
    "alerts_triggered_total",
    "Watches triggered by a matching price",
    ["kind"],
)

concurrency_conflicts_total = Counter(
    "concurrency_conflicts_total",
    "Evaluation results discarded because watch status changed underneath",
)

# Dispatch metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notification dispatch attempts",
    ["method", "status"],
)

auto_buy_attempts_total = Counter(
    "auto_buy_attempts_total",
    "Auto-buy purchase attempts",
    ["status"],
)

dispatch_latency_seconds = Histogram(
    "dispatch_latency_seconds",
    "External dispatch latency",
    ["target"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0],
)

# Scheduler metrics
watches_due = Gauge(
    "watches_due",
    "Watches due for evaluation at the last check sweep",
)

evaluations_in_flight = Gauge(
    "evaluations_in_flight",
    "Watch evaluations currently running",
)

scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_ingest(provider: str, accepted: bool):
    """Record an ingestion attempt."""
    status = "accepted" if accepted else "rejected"
    provider_records_ingested_total.labels(provider=provider, status=status).inc()


def record_watch_checked(outcome: str, duration: float):
    """Record a finished watch evaluation."""
    watches_checked_total.labels(outcome=outcome).inc()
    watch_evaluation_duration_seconds.observe(duration)


def record_notification(method: str, success: bool):
    """Record a notification dispatch."""
    status = "success" if success else "error"
    notifications_sent_total.labels(method=method, status=status).inc()


def record_auto_buy(status: str):
    """Record an auto-buy attempt (success, failure, exhausted)."""
    auto_buy_attempts_total.labels(status=status).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
