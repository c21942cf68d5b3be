"""Prometheus metrics for the market data pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("marketsync", "Market data pipeline application info")
app_info.info({"version": "0.1.0", "name": "marketsync"})

# Queue metrics
market_jobs_enqueued_total = Counter(
    "market_jobs_enqueued_total",
    "Total number of enqueue requests",
    ["provider", "result"],
)

market_jobs_finished_total = Counter(
    "market_jobs_finished_total",
    "Total number of jobs leaving the running state",
    ["provider", "status"],
)

market_jobs_reclaimed_total = Counter(
    "market_jobs_reclaimed_total",
    "Total number of orphaned running jobs returned to pending",
)

# Provider fetch metrics
provider_fetches_total = Counter(
    "provider_fetches_total",
    "Total number of provider calls by outcome",
    ["provider", "outcome"],
)

provider_fetch_duration_seconds = Histogram(
    "provider_fetch_duration_seconds",
    "Time spent waiting on provider calls",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Budget metrics
provider_budget_used = Gauge(
    "provider_budget_used",
    "Calls consumed in the current hour window",
    ["provider"],
)

provider_budget_remaining = Gauge(
    "provider_budget_remaining",
    "Calls left in the current hour window",
    ["provider"],
)

# Normalization metrics
market_records_written_total = Counter(
    "market_records_written_total",
    "Master market rows inserted",
    ["provider"],
)

normalization_errors_total = Counter(
    "normalization_errors_total",
    "Provider payloads that failed to normalize",
    ["provider"],
)

# Scheduler metrics
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

latest_view_rows = Gauge(
    "latest_view_rows",
    "Rows in the latest-price view after the last refresh",
)


def record_enqueue(provider: str, created: bool):
    """Record an enqueue request."""
    market_jobs_enqueued_total.labels(
        provider=provider, result="created" if created else "deduplicated"
    ).inc()


def record_job_finished(provider: str, status: str):
    """Record a job leaving the running state (completed/failed/deferred)."""
    market_jobs_finished_total.labels(provider=provider, status=status).inc()


def record_jobs_reclaimed(count: int):
    """Record orphaned jobs returned to pending."""
    if count:
        market_jobs_reclaimed_total.inc(count)


def record_fetch(provider: str, outcome: str, duration: float):
    """Record a provider call."""
    provider_fetches_total.labels(provider=provider, outcome=outcome).inc()
    provider_fetch_duration_seconds.labels(provider=provider).observe(duration)


def update_budget(provider: str, used: int, remaining: int):
    """Update the per-provider budget gauges."""
    provider_budget_used.labels(provider=provider).set(used)
    provider_budget_remaining.labels(provider=provider).set(remaining)


def record_records_written(provider: str, count: int):
    """Record master rows inserted for a provider."""
    if count:
        market_records_written_total.labels(provider=provider).inc(count)


def record_normalization_error(provider: str):
    """Record a payload that could not be normalized."""
    normalization_errors_total.labels(provider=provider).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def update_latest_view_rows(count: int):
    """Update the latest-price view row gauge."""
    latest_view_rows.set(count)
