"""OpenTelemetry setup and the per-task span used by the dispatcher."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode


tracer = trace.get_tracer("fitflow.worker")


def setup_tracing(service_name: str, endpoint: str | None) -> None:
    """Register a tracer provider; spans are exported only when an OTLP endpoint is set."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


@contextmanager
def task_span(kind: str, task_id: str, attempts: int) -> Iterator[Span]:
    with tracer.start_as_current_span(f"task {kind}") as span:
        span.set_attribute("task.id", task_id)
        span.set_attribute("task.kind", kind)
        span.set_attribute("task.attempts", attempts)
        yield span


def record_outcome(span: Span, outcome: str) -> None:
    span.set_attribute("task.outcome", outcome)
    if outcome == "failed":
        span.set_status(Status(StatusCode.ERROR))


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
