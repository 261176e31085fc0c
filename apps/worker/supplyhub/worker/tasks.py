"""Celery entry points. Each task owns one session for the length of a tick."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy.orm import Session

import supplyhub.models  # noqa: F401
from supplyhub.billing.service import invoicing_service
from supplyhub.core.config import get_settings
from supplyhub.core.database import SessionLocal
from supplyhub.correction.service import correction_service
from supplyhub.events import subscribe_event_log
from supplyhub.lifecycle.scheduler import run_effectuation_tick
from supplyhub.logging import configure_logging
from supplyhub.messaging.gateway import HttpHubGateway, ResilientHubGateway, StaticTokenProvider
from supplyhub.messaging.poller import QueuePoller
from supplyhub.otel import setup_otel
from supplyhub.settlement.service import settlement_service
from supplyhub.worker.celery_app import celery_app


configure_logging()
setup_otel("worker")
subscribe_event_log()


@contextmanager
def session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@lru_cache
def hub_poller() -> QueuePoller:
    settings = get_settings()
    # token acquisition lives outside this service; the worker is handed a bearer token
    token_provider = StaticTokenProvider(settings.hub_token)
    gateway = HttpHubGateway(settings.hub_base_url, token_provider, timeout=settings.hub_timeout_seconds)
    return QueuePoller(gateway=ResilientHubGateway(gateway, token_provider))


@celery_app.task(name="supplyhub.tasks.poll_queues")
def poll_queues() -> dict[str, dict[str, int]]:
    with session_scope() as session:
        results = hub_poller().poll_all(session)
    return {queue.value: dict(outcomes) for queue, outcomes in results.items()}


@celery_app.task(name="supplyhub.tasks.run_effectuation")
def run_effectuation() -> list[str]:
    with session_scope() as session:
        return [str(process_id) for process_id in run_effectuation_tick(session)]


@celery_app.task(name="supplyhub.tasks.run_settlement")
def run_settlement() -> dict[str, int]:
    with session_scope() as session:
        result = settlement_service.run_settlement_tick(session)
    return {
        "settled": len(result.settled),
        "final_settled": len(result.final_settled),
        "skipped": result.skipped,
        "failed": result.failed,
    }


@celery_app.task(name="supplyhub.tasks.detect_corrections")
def detect_corrections() -> list[str]:
    with session_scope() as session:
        return [str(batch.id) for batch in correction_service.run_correction_detection(session)]


@celery_app.task(name="supplyhub.tasks.run_invoicing")
def run_invoicing() -> list[str]:
    with session_scope() as session:
        return [str(invoice.id) for invoice in invoicing_service.run_invoicing_tick(session)]
