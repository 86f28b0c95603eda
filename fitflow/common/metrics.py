"""Prometheus metric definitions shared by the worker and handlers."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


tasks_enqueued_total = Counter("tasks_enqueued_total", "Tasks written to the outbox", ["kind"])
task_outcomes_total = Counter(
    "task_outcomes_total",
    "Task executions by final disposition",
    ["kind", "outcome"],
)
task_duration_seconds = Histogram("task_duration_seconds", "Handler execution duration seconds", ["kind"])
task_queue_delay_seconds = Histogram(
    "task_queue_delay_seconds",
    "Delay seconds between a task becoming available and being claimed",
    ["kind"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of tasks pending or being processed",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest available pending task",
    ["service"],
)
push_failures_total = Counter(
    "push_failures_total",
    "Per-device push failures by disposition",
    ["disposition"],
)
charge_attempts_total = Counter("charge_attempts_total", "Outstanding-payment charge attempts", ["outcome"])
receipt_verifications_total = Counter(
    "receipt_verifications_total",
    "App Store receipt verification results",
    ["result"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
