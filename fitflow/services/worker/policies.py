"""Retry policies attached to handler registrations.

A policy looks at the exception a handler raised and returns the delay before
the task may run again, or None when the failure is terminal.
"""

from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import DisconnectionError, OperationalError


RetryPolicy = Callable[[BaseException], timedelta | None]


def never_retry(exc: BaseException) -> timedelta | None:
    return None


def retry_on(
    *exc_types: type[BaseException],
    delay: timedelta,
    predicate: Callable[[BaseException], bool] | None = None,
) -> RetryPolicy:
    """Retry after `delay` when the exception is one of `exc_types` and passes `predicate`."""

    def policy(exc: BaseException) -> timedelta | None:
        if not isinstance(exc, exc_types):
            return None
        if predicate is not None and not predicate(exc):
            return None
        return delay

    return policy


def first_of(*policies: RetryPolicy) -> RetryPolicy:
    """Combine policies; the first one that asks for a retry wins."""

    def policy(exc: BaseException) -> timedelta | None:
        for candidate in policies:
            delay = candidate(exc)
            if delay is not None:
                return delay
        return None

    return policy


def is_transient(exc: BaseException) -> bool:
    return bool(getattr(exc, "transient", False))


retry_on_database_outage = retry_on(OperationalError, DisconnectionError, delay=timedelta(minutes=1))
