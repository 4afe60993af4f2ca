from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASKS_SUBMITTED_TOTAL = Counter(
    "taskrelay_tasks_submitted_total",
    "Tasks accepted by the broker",
    labelnames=("kind",),
)

TASKS_CLAIMED_TOTAL = Counter(
    "taskrelay_tasks_claimed_total",
    "Tasks handed to a worker",
    labelnames=("kind",),
)

TASK_CLAIM_WAIT_SECONDS = Histogram(
    "taskrelay_task_claim_wait_seconds",
    "Time a task spent pending before a worker claimed it",
    labelnames=("kind",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 300, 900, float("inf")),
)

RESULTS_REPORTED_TOTAL = Counter(
    "taskrelay_results_reported_total",
    "Results reported by workers grouped by outcome",
    labelnames=("outcome",),
)

RESULTS_FETCHED_TOTAL = Counter(
    "taskrelay_results_fetched_total",
    "Results taken by callers",
)

RECORDS_EXPIRED_TOTAL = Counter(
    "taskrelay_records_expired_total",
    "Tasks or results dropped by the expiry sweep",
    labelnames=("record",),
)

STORE_SIZE_GAUGE = Gauge(
    "taskrelay_store_size",
    "Records currently held by the broker",
    labelnames=("store",),
)

WORKER_EXECUTIONS_TOTAL = Counter(
    "taskrelay_worker_executions_total",
    "Task executions on the worker grouped by kind and outcome",
    labelnames=("kind", "outcome"),
)

WORKER_EXECUTION_LATENCY_SECONDS = Histogram(
    "taskrelay_worker_execution_latency_seconds",
    "Wall-clock duration of task executions",
    labelnames=("kind",),
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

WORKER_ACTIVE_GAUGE = Gauge(
    "taskrelay_worker_executions_active",
    "Task executions currently in flight on the worker",
)

NOTIFICATION_DELIVERIES_TOTAL = Counter(
    "taskrelay_notification_deliveries_total",
    "Notification delivery attempts grouped by outcome",
    labelnames=("outcome",),
)


def increment_task_submitted(*, kind: str) -> None:
    TASKS_SUBMITTED_TOTAL.labels(kind=kind).inc()


def record_task_claimed(*, kind: str, waited: float) -> None:
    TASKS_CLAIMED_TOTAL.labels(kind=kind).inc()
    TASK_CLAIM_WAIT_SECONDS.labels(kind=kind).observe(max(0.0, waited))


def increment_result_reported(*, exit_code: int) -> None:
    outcome = "success" if exit_code == 0 else "failure"
    RESULTS_REPORTED_TOTAL.labels(outcome=outcome).inc()


def increment_result_fetched() -> None:
    RESULTS_FETCHED_TOTAL.inc()


def increment_expired(*, record: str, count: int) -> None:
    if count > 0:
        RECORDS_EXPIRED_TOTAL.labels(record=record).inc(count)


def record_store_sizes(*, tasks: int, results: int) -> None:
    STORE_SIZE_GAUGE.labels(store="tasks").set(tasks)
    STORE_SIZE_GAUGE.labels(store="results").set(results)


def mark_execution_started() -> None:
    WORKER_ACTIVE_GAUGE.inc()


def mark_execution_completed(*, kind: str, exit_code: int, latency: float) -> None:
    WORKER_ACTIVE_GAUGE.dec()
    if exit_code == 0:
        outcome = "success"
    elif exit_code < 0:
        outcome = "internal_failure"
    else:
        outcome = "failure"
    WORKER_EXECUTIONS_TOTAL.labels(kind=kind, outcome=outcome).inc()
    WORKER_EXECUTION_LATENCY_SECONDS.labels(kind=kind).observe(max(0.0, latency))


def increment_notification_delivery(*, outcome: str) -> None:
    NOTIFICATION_DELIVERIES_TOTAL.labels(outcome=outcome).inc()


__all__ = [
    "increment_expired",
    "increment_notification_delivery",
    "increment_result_fetched",
    "increment_result_reported",
    "increment_task_submitted",
    "mark_execution_completed",
    "mark_execution_started",
    "record_store_sizes",
    "record_task_claimed",
]
