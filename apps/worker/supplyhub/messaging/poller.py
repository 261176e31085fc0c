from __future__ import annotations

import enum
import json
import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import pydantic
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supplyhub.context import correlation_scope
from supplyhub.core.clock import utcnow
from supplyhub.core.config import get_settings
from supplyhub.core.errors import MalformedInput
from supplyhub.jobs import job_run
from supplyhub.messaging.gateway import HubGateway, HubMessage, QueueName
from supplyhub.messaging.handlers import Handler, HandlerRegistry, default_registry
from supplyhub.messaging.models import DeadLetter, InboundMessage, InboundStatus, ProcessedMessageId
from supplyhub.messaging.schemas import PAYLOAD_SCHEMAS, MessageType
from supplyhub.metrics import observe_dead_letter, observe_inbound_message


logger = logging.getLogger("supplyhub.messaging")
tracer = trace.get_tracer("supplyhub.messaging")


class PollOutcome(enum.StrEnum):
    EMPTY = "empty"
    SKIPPED = "skipped"
    PROCESSED = "processed"
    DEAD_LETTERED = "dead_lettered"
    FAILED = "failed"


@dataclass(slots=True)
class QueuePoller:
    """Consumes hub queues exactly once per message id.

    Per message the order is fixed: handler commit, processed-id commit, dequeue.
    A crash between any two steps is repaired by the next poll, which either
    re-runs an idempotent handler or finds the processed id and only dequeues.
    """

    gateway: HubGateway
    registry: HandlerRegistry = field(default_factory=default_registry)
    max_attempts: int | None = None
    queue_timeout_seconds: float | None = None
    clock: Callable[[], float] = time.monotonic

    def poll_queue(self, session: Session, queue: QueueName) -> PollOutcome:
        message = self.gateway.peek(queue)
        if message is None:
            return PollOutcome.EMPTY

        with correlation_scope(message.correlation_id or message.message_id, message_id=message.message_id):
            with tracer.start_as_current_span("message.handle") as span:
                span.set_attribute("queue", queue.value)
                span.set_attribute("message_id", message.message_id)
                span.set_attribute("message_type", message.message_type)
                outcome = self._handle(session, message)
                span.set_attribute("outcome", outcome.value)
        observe_inbound_message(queue.value, outcome.value)
        return outcome

    def poll_all(self, session: Session, queues: Iterable[QueueName] | None = None) -> dict[QueueName, Counter[str]]:
        """Drain each queue until it is empty, a message fails, or the queue's time budget is spent."""
        budget = self.queue_timeout_seconds if self.queue_timeout_seconds is not None else get_settings().queue_timeout_seconds
        results: dict[QueueName, Counter[str]] = {}
        with job_run("poll") as summary:
            for queue in queues or list(QueueName):
                outcomes: Counter[str] = Counter()
                deadline = self.clock() + budget
                while self.clock() < deadline:
                    outcome = self.poll_queue(session, queue)
                    if outcome is PollOutcome.EMPTY:
                        break
                    outcomes[outcome.value] += 1
                    if outcome is PollOutcome.FAILED:
                        # the failed message stays at the head; retry on the next tick
                        break
                results[queue] = outcomes
            summary["count"] = sum(sum(outcomes.values()) for outcomes in results.values())
        return results

    def _handle(self, session: Session, message: HubMessage) -> PollOutcome:
        inbound = self._record_receipt(session, message)

        if self._already_processed(session, message.message_id):
            self.gateway.dequeue(message.message_id)
            logger.info("message.duplicate", extra=self._fields(message, PollOutcome.SKIPPED))
            return PollOutcome.SKIPPED
        if inbound.status == InboundStatus.DEAD_LETTERED:
            # quarantined earlier but the dequeue did not go through
            self.gateway.dequeue(message.message_id)
            return PollOutcome.DEAD_LETTERED

        try:
            handler, payload = self._parse(message)
        except MalformedInput as exc:
            self._dead_letter(session, message, exc.reason, kind="malformed")
            return PollOutcome.DEAD_LETTERED

        try:
            handler(session, message, payload)
        except Exception as exc:
            session.rollback()
            attempts = self._record_failure(session, message, exc)
            limit = self.max_attempts if self.max_attempts is not None else get_settings().max_handler_attempts
            logger.exception(
                "message.failed",
                extra={**self._fields(message, PollOutcome.FAILED), "attempt": attempts, "error": str(exc)},
            )
            if attempts >= limit:
                self._dead_letter(
                    session, message, f"handler failed after {attempts} attempts: {exc}", kind="retries_exhausted"
                )
                return PollOutcome.DEAD_LETTERED
            return PollOutcome.FAILED

        self._mark_processed(session, message)
        self.gateway.dequeue(message.message_id)
        logger.info("message.processed", extra=self._fields(message, PollOutcome.PROCESSED))
        return PollOutcome.PROCESSED

    def _parse(self, message: HubMessage) -> tuple[Handler, Any]:
        try:
            message_type = MessageType(message.message_type)
        except ValueError as exc:
            raise MalformedInput(message.message_id, f"unknown message type '{message.message_type}'") from exc

        handler = self.registry.resolve(message.queue, message_type)
        if handler is None:
            raise MalformedInput(message.message_id, f"no handler for {message_type.value} on queue {message.queue.value}")

        try:
            raw = json.loads(message.payload)
        except json.JSONDecodeError as exc:
            raise MalformedInput(message.message_id, f"payload is not JSON: {exc.msg}") from exc
        try:
            payload = PAYLOAD_SCHEMAS[message_type].model_validate(raw)
        except pydantic.ValidationError as exc:
            raise MalformedInput(message.message_id, f"payload rejected: {exc.errors()[0]['msg']}") from exc
        return handler, payload

    def _record_receipt(self, session: Session, message: HubMessage) -> InboundMessage:
        inbound = self._inbound(session, message.message_id)
        if inbound is not None:
            return inbound
        inbound = InboundMessage(
            message_id=message.message_id,
            queue=message.queue.value,
            message_type=message.message_type,
            correlation_id=message.correlation_id,
            status=InboundStatus.RECEIVED,
            attempts=0,
        )
        session.add(inbound)
        try:
            session.commit()
        except IntegrityError:
            # a concurrent poller logged it first
            session.rollback()
            existing = self._inbound(session, message.message_id)
            if existing is None:
                raise
            return existing
        return inbound

    def _record_failure(self, session: Session, message: HubMessage, exc: Exception) -> int:
        inbound = self._record_receipt(session, message)
        inbound.attempts += 1
        inbound.status = InboundStatus.FAILED
        inbound.last_error = str(exc)[:2000]
        session.add(inbound)
        session.commit()
        return inbound.attempts

    def _mark_processed(self, session: Session, message: HubMessage) -> None:
        session.add(ProcessedMessageId(message_id=message.message_id, queue=message.queue.value, processed_at=utcnow()))
        inbound = self._inbound(session, message.message_id)
        if inbound is not None:
            inbound.status = InboundStatus.PROCESSED
            inbound.attempts += 1
            inbound.last_error = None
            session.add(inbound)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("message.already_recorded", extra=self._fields(message, PollOutcome.SKIPPED))

    def _dead_letter(self, session: Session, message: HubMessage, reason: str, *, kind: str) -> None:
        session.add(
            DeadLetter(
                message_id=message.message_id,
                queue=message.queue.value,
                message_type=message.message_type,
                raw_payload=message.payload,
                reason=reason[:2000],
            )
        )
        inbound = self._inbound(session, message.message_id)
        if inbound is not None:
            inbound.status = InboundStatus.DEAD_LETTERED
            inbound.last_error = reason[:2000]
            session.add(inbound)
        session.commit()
        observe_dead_letter(message.queue.value, kind)
        logger.warning(
            "message.dead_lettered",
            extra={**self._fields(message, PollOutcome.DEAD_LETTERED), "error": reason},
        )
        self.gateway.dequeue(message.message_id)

    @staticmethod
    def _already_processed(session: Session, message_id: str) -> bool:
        return session.scalar(select(ProcessedMessageId.id).where(ProcessedMessageId.message_id == message_id)) is not None

    @staticmethod
    def _inbound(session: Session, message_id: str) -> InboundMessage | None:
        return session.scalar(select(InboundMessage).where(InboundMessage.message_id == message_id))

    @staticmethod
    def _fields(message: HubMessage, outcome: PollOutcome) -> dict[str, Any]:
        return {
            "queue": message.queue.value,
            "message_id": message.message_id,
            "message_type": message.message_type,
            "outcome": outcome.value,
        }
