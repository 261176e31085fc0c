"""Per-task correlation state.

HTTP requests, worker ticks and hub messages each run inside a
``correlation_scope``; log records, spans and published events read the ids
from here.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
message_id_var: ContextVar[str | None] = ContextVar("message_id", default=None)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_message_id() -> str | None:
    return message_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str | None, *, message_id: str | None = None) -> Iterator[str | None]:
    correlation_token = correlation_id_var.set(correlation_id)
    message_token = message_id_var.set(message_id)
    try:
        yield correlation_id
    finally:
        message_id_var.reset(message_token)
        correlation_id_var.reset(correlation_token)
