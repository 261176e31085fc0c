from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from supplyhub.core.clock import local_today
from supplyhub.core.errors import ConcurrencyConflict, ConflictError
from supplyhub.jobs import job_run
from supplyhub.lifecycle.effectuation import EffectuationService, effectuation_service
from supplyhub.lifecycle.models import ProcessRequest
from supplyhub.lifecycle.state_machine import ProcessStatus


logger = logging.getLogger("supplyhub.lifecycle")


def due_for_effectuation(session: Session, today: date) -> list[uuid.UUID]:
    return list(
        session.scalars(
            select(ProcessRequest.id)
            .where(
                ProcessRequest.status == ProcessStatus.EFFECTUATION_PENDING,
                ProcessRequest.effective_date <= today,
            )
            .order_by(ProcessRequest.effective_date, ProcessRequest.created_at)
        )
    )


def run_effectuation_tick(
    session: Session,
    today: date | None = None,
    *,
    service: EffectuationService | None = None,
) -> list[uuid.UUID]:
    """Complete every process whose effective date has arrived; returns the completed ids."""
    service = service or effectuation_service
    today = today or local_today()
    completed: list[uuid.UUID] = []

    with job_run("effectuation", today=today.isoformat()) as summary:
        for process_id in due_for_effectuation(session, today):
            try:
                service.complete(session, process_id, today=today)
            except ConcurrencyConflict as exc:
                logger.warning(
                    "effectuation.skipped",
                    extra={"process_id": str(process_id), "to_status": exc.actual, "error": str(exc)},
                )
                continue
            except ConflictError as exc:
                session.rollback()
                logger.error(
                    "effectuation.failed",
                    extra={"process_id": str(process_id), "error": str(exc)},
                )
                continue
            completed.append(process_id)
        summary["count"] = len(completed)
    return completed
