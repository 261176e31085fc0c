from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from supplyhub.context import correlation_scope, get_correlation_id, get_message_id
from supplyhub.metrics import observe_job


logger = logging.getLogger("supplyhub.jobs")
tracer = trace.get_tracer("supplyhub.jobs")


@contextmanager
def job_run(job_type: str, **attributes: Any) -> Iterator[dict[str, Any]]:
    """Span, correlation id, start/finish logs and duration metrics around one worker tick.

    ``count`` and ``outcome`` set on the yielded dict are copied into the
    ``job.finished`` log record.
    """
    correlation_id = get_correlation_id() or str(uuid.uuid4())
    started = time.perf_counter()
    final_status = "Failed"
    summary: dict[str, Any] = {}

    with (
        correlation_scope(correlation_id, message_id=get_message_id()),
        tracer.start_as_current_span(f"job.{job_type}") as span,
    ):
        span.set_attribute("supplyhub.role", "worker")
        span.set_attribute("job_type", job_type)
        span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            span.set_attribute(key, str(value))
        logger.info("job.started", extra={"job_type": job_type, "status": "Running", "duration_ms": 0.0})
        try:
            yield summary
            final_status = "Succeeded"
            logger.info(
                "job.finished",
                extra={
                    "job_type": job_type,
                    "status": final_status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    **{key: value for key, value in summary.items() if key in {"count", "outcome"}},
                },
            )
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            logger.error(
                "job.finished",
                exc_info=True,
                extra={
                    "job_type": job_type,
                    "status": final_status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error": str(exc),
                },
            )
            raise
        finally:
            observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)
