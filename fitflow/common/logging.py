"""JSON logs on stdout, stamped with whatever task the current worker thread runs.

The dispatcher binds the task id, kind, attempt number and handler name with
`bind_log_context`; handlers add their own keys (the payment plan being
charged, for example). `asyncio.to_thread` copies the context, so bindings made
inside a worker thread never leak into another worker.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from fitflow.common.config import settings


LOG_CONTEXT_FIELDS = ("task_id", "task_kind", "task_attempt", "handler", "payment_plan_id")

log_context: ContextVar[dict[str, object]] = ContextVar("log_context", default={})


@contextmanager
def bind_log_context(**fields: object) -> Iterator[None]:
    """Add `fields` to every record logged inside the block. Nested blocks extend the outer binding."""

    token = log_context.set({**log_context.get(), **fields})
    try:
        yield
    finally:
        log_context.reset(token)


class TaskContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        bound = log_context.get()
        for name in LOG_CONTEXT_FIELDS:
            setattr(record, name, bound.get(name, ""))
        return True


def configure_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TaskContextFilter())
    context_fields = " ".join(f"%({name})s" for name in LOG_CONTEXT_FIELDS)
    handler.setFormatter(
        JsonFormatter(
            f"%(asctime)s %(levelname)s %(name)s {context_fields} %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
            static_fields={"service": settings.service_name},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # httpx and stripe log each request at INFO.
    if settings.log_level.upper() != "DEBUG":
        for name in ("httpx", "httpcore", "stripe"):
            logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("fitflow")
