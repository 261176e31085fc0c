"""Domain events published after state changes commit.

Envelopes are plain dicts holding ``event_type``, the correlation id (and hub
message id) in scope, ``published_at`` and the event's own fields. Handlers
subscribe to an exact event type or to a dotted prefix such as ``"process."``.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from supplyhub.context import get_correlation_id, get_message_id
from supplyhub.core.clock import utcnow


logger = logging.getLogger("supplyhub.events")


@dataclass(frozen=True, slots=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, payload=payload)
        for handler in self._handlers_for(event_name):
            handler(event)

    def _handlers_for(self, event_name: str) -> list[EventHandler]:
        handlers = list(self._subscribers.get(event_name, []))
        for pattern, subscribed in list(self._subscribers.items()):
            if pattern.endswith(".") and event_name.startswith(pattern):
                handlers.extend(subscribed)
        return handlers


event_bus = InProcessEventBus()

published_events: list[dict[str, Any]] = []


def publish(event_type: str, **fields: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_type": event_type,
        "correlation_id": get_correlation_id(),
        "published_at": utcnow().isoformat(),
        **fields,
    }
    message_id = get_message_id()
    if message_id is not None:
        envelope.setdefault("message_id", message_id)

    published_events.append(envelope)
    logger.debug("event.published", extra={"operation": event_type})
    event_bus.publish(event_type, envelope)
    return envelope


_LOGGED_FIELDS = {"process_id", "metering_point_id", "run_id", "batch_id", "invoice_id", "from_status", "to_status"}


def log_domain_event(event: DomainEvent) -> None:
    logger.info(event.name, extra={key: value for key, value in event.payload.items() if key in _LOGGED_FIELDS})


def subscribe_event_log(prefixes: tuple[str, ...] = ("process.", "supply.", "settlement.", "correction.", "invoice.")) -> None:
    for prefix in prefixes:
        event_bus.unsubscribe(prefix, log_domain_event)
        event_bus.subscribe(prefix, log_domain_event)
