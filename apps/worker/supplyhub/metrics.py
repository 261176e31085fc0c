from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.types import Scope


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

worker_jobs_total = Counter(
    "supplyhub_jobs_total",
    "Total worker ticks by status",
    ["job_type", "status"],
)

worker_job_duration_seconds = Histogram(
    "supplyhub_job_duration_seconds",
    "Worker tick duration in seconds",
    ["job_type"],
)

inbound_messages_total = Counter(
    "supplyhub_inbound_messages_total",
    "Inbound hub messages by queue and outcome",
    ["queue", "outcome"],
)

dead_letters_total = Counter(
    "supplyhub_dead_letters_total",
    "Messages quarantined in the dead-letter table",
    ["queue", "reason"],
)

process_transitions_total = Counter(
    "supplyhub_process_transitions_total",
    "Process state transitions",
    ["trigger", "to_status"],
)

concurrency_conflicts_total = Counter(
    "supplyhub_concurrency_conflicts_total",
    "Conditional updates that matched no row",
    ["entity"],
)

settlement_runs_total = Counter(
    "supplyhub_settlement_runs_total",
    "Settlement runs by status",
    ["status"],
)

correction_batches_total = Counter(
    "supplyhub_correction_batches_total",
    "Correction batches by trigger type",
    ["trigger_type"],
)

invoices_created_total = Counter(
    "supplyhub_invoices_created_total",
    "Invoices created by type and payment model",
    ["invoice_type", "payment_model"],
)

gateway_retries_total = Counter(
    "supplyhub_gateway_retries_total",
    "Hub gateway retries by reason",
    ["operation", "reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(scope: Scope) -> str:
    """Route template once routing has run, otherwise the raw path with ids masked."""
    route = scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(scope.get("path", ""))


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_job(job_type: str, status: str, duration: float) -> None:
    worker_jobs_total.labels(job_type=job_type, status=status).inc()
    worker_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_inbound_message(queue: str, outcome: str) -> None:
    inbound_messages_total.labels(queue=queue, outcome=outcome).inc()


def observe_dead_letter(queue: str, reason: str) -> None:
    dead_letters_total.labels(queue=queue, reason=reason).inc()


def observe_transition(trigger: str, to_status: str) -> None:
    process_transitions_total.labels(trigger=trigger, to_status=to_status).inc()


def observe_concurrency_conflict(entity: str) -> None:
    concurrency_conflicts_total.labels(entity=entity).inc()


def observe_settlement_run(status: str) -> None:
    settlement_runs_total.labels(status=status).inc()


def observe_correction_batch(trigger_type: str) -> None:
    correction_batches_total.labels(trigger_type=trigger_type).inc()


def observe_invoice_created(invoice_type: str, payment_model: str) -> None:
    invoices_created_total.labels(invoice_type=invoice_type, payment_model=payment_model).inc()


def observe_gateway_retry(operation: str, reason: str) -> None:
    gateway_retries_total.labels(operation=operation, reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
