from __future__ import annotations

import enum
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
from opentelemetry import trace

from supplyhub.context import get_correlation_id
from supplyhub.core.config import get_settings
from supplyhub.core.errors import AuthenticationFailure, TransientExternalFailure
from supplyhub.metrics import observe_gateway_retry


logger = logging.getLogger("supplyhub.gateway")
tracer = trace.get_tracer("supplyhub.gateway")

T = TypeVar("T")

_RETRYABLE_STATUS = {429, 502, 503, 504}


class QueueName(enum.StrEnum):
    PROCESSES = "processes"
    METERING = "metering"
    PRICES = "prices"
    AGGREGATIONS = "aggregations"


@dataclass(frozen=True, slots=True)
class HubMessage:
    message_id: str
    queue: QueueName
    message_type: str
    payload: str
    correlation_id: str | None = None


@dataclass(frozen=True, slots=True)
class SendResult:
    correlation_id: str
    accepted: bool
    rejection_reason: str | None = None


class HubGateway(Protocol):
    def peek(self, queue: QueueName) -> HubMessage | None: ...

    def dequeue(self, message_id: str) -> None: ...

    def send(self, process_type: str, payload: dict[str, Any]) -> SendResult: ...


class TokenProvider(Protocol):
    def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


class StaticTokenProvider:
    def __init__(self, token: str) -> None:
        self._token = token
        self.invalidations = 0

    def get_token(self) -> str:
        return self._token

    def invalidate(self) -> None:
        self.invalidations += 1


class HttpHubGateway:
    """JSON-over-HTTP client for the hub's queue and request endpoints."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.token_provider = token_provider
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout if timeout is not None else get_settings().hub_timeout_seconds,
        )

    def peek(self, queue: QueueName) -> HubMessage | None:
        response = self._request("GET", f"/queues/{queue.value}/peek")
        if response.status_code == 204:
            return None
        body = response.json()
        return HubMessage(
            message_id=str(body["message_id"]),
            queue=queue,
            message_type=str(body["message_type"]),
            payload=body["payload"] if isinstance(body["payload"], str) else json.dumps(body["payload"]),
            correlation_id=body.get("correlation_id"),
        )

    def dequeue(self, message_id: str) -> None:
        self._request("DELETE", f"/messages/{message_id}")

    def send(self, process_type: str, payload: dict[str, Any]) -> SendResult:
        response = self._request("POST", f"/processes/{process_type}", json=payload)
        body = response.json()
        return SendResult(
            correlation_id=str(body["correlation_id"]),
            accepted=bool(body["accepted"]),
            rejection_reason=body.get("rejection_reason"),
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token_provider.get_token()}"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise TransientExternalFailure(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthenticationFailure(f"{method} {path} unauthorized", status_code=401)
        if response.status_code in _RETRYABLE_STATUS:
            raise TransientExternalFailure(f"{method} {path} returned {response.status_code}", status_code=response.status_code)
        response.raise_for_status()
        return response


class ResilientHubGateway:
    """Retry policy around another gateway.

    Transient failures back off exponentially; a first-attempt authentication
    failure refreshes the token once. The last attempt runs outside the retry
    handler so its error reaches the caller unchanged.
    """

    def __init__(
        self,
        inner: HubGateway,
        token_provider: TokenProvider | None = None,
        *,
        max_retries: int | None = None,
        initial_backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.inner = inner
        self.token_provider = token_provider
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.initial_backoff_seconds = (
            initial_backoff_seconds if initial_backoff_seconds is not None else settings.gateway_initial_backoff_seconds
        )
        self._sleep = sleep

    def peek(self, queue: QueueName) -> HubMessage | None:
        return self._execute("peek", lambda: self.inner.peek(queue))

    def dequeue(self, message_id: str) -> None:
        self._execute("dequeue", lambda: self.inner.dequeue(message_id))

    def send(self, process_type: str, payload: dict[str, Any]) -> SendResult:
        return self._execute("send", lambda: self.inner.send(process_type, payload))

    def _execute(self, operation: str, call: Callable[[], T]) -> T:
        backoff = self.initial_backoff_seconds
        # one token refresh per call, whichever attempt is rejected first
        refreshed = False
        with tracer.start_as_current_span(f"hub.{operation}") as span:
            for attempt in range(1, self.max_retries):
                try:
                    return call()
                except AuthenticationFailure:
                    if refreshed or self.token_provider is None:
                        raise
                    self.token_provider.invalidate()
                    refreshed = True
                    observe_gateway_retry(operation, "unauthorized")
                    logger.warning("gateway.token_refreshed", extra={"operation": operation, "attempt": attempt})
                except TransientExternalFailure as exc:
                    observe_gateway_retry(operation, "transient")
                    logger.warning(
                        "gateway.retry",
                        extra={"operation": operation, "attempt": attempt, "error": str(exc), "duration_ms": backoff * 1000},
                    )
                    self._sleep(backoff)
                    backoff *= 2
            span.set_attribute("final_attempt", self.max_retries)
            return call()


class InMemoryHubGateway:
    """Queue-backed stand-in for the hub, used for local runs and tests."""

    def __init__(self) -> None:
        self.queues: dict[QueueName, deque[HubMessage]] = {queue: deque() for queue in QueueName}
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.rejections: dict[str, str] = {}
        self.dequeued: list[str] = []

    def enqueue(self, message: HubMessage) -> None:
        self.queues[message.queue].append(message)

    def peek(self, queue: QueueName) -> HubMessage | None:
        pending = self.queues[queue]
        return pending[0] if pending else None

    def dequeue(self, message_id: str) -> None:
        self.dequeued.append(message_id)
        for pending in self.queues.values():
            for message in list(pending):
                if message.message_id == message_id:
                    pending.remove(message)
                    return

    def send(self, process_type: str, payload: dict[str, Any]) -> SendResult:
        self.sent.append((process_type, payload))
        correlation_id = str(uuid.uuid4())
        reason = self.rejections.get(str(payload.get("metering_point_id")))
        if reason is not None:
            return SendResult(correlation_id=correlation_id, accepted=False, rejection_reason=reason)
        return SendResult(correlation_id=correlation_id, accepted=True)
