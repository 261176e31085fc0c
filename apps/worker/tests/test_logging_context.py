from __future__ import annotations

import json
import logging

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from supplyhub import events
from supplyhub.context import correlation_scope, get_correlation_id
from supplyhub.jobs import job_run
from supplyhub.logging import JsonLogFormatter
from supplyhub.otel import setup_inmemory_otel


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel()
    exporter.clear()
    return exporter


def _job_records(caplog: pytest.LogCaptureFixture, message: str) -> list[logging.LogRecord]:
    return [record for record in caplog.records if record.name == "supplyhub.jobs" and record.msg == message]


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "supplyhub.poller",
            "levelname": "INFO",
            "msg": "message.processed",
            "correlation_id": "corr-fmt-1",
            "queue": "metering",
            "message_id": "msg-1",
            "password": "secret",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "message.processed"
    assert payload["logger"] == "supplyhub.poller"
    assert payload["correlation_id"] == "corr-fmt-1"
    assert payload["fields"] == {"queue": "metering", "message_id": "msg-1"}


def test_json_formatter_truncates_long_errors() -> None:
    record = logging.makeLogRecord({"msg": "job.finished", "error": "x" * 2000})

    payload = json.loads(JsonLogFormatter().format(record))

    assert len(payload["fields"]["error"]) == 500


def test_job_run_logs_start_and_finish_with_correlation_id(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="supplyhub.jobs")
    with correlation_scope("corr-job-1"), job_run("invoicing_tick") as summary:
        summary["count"] = 3

    [started] = _job_records(caplog, "job.started")
    [finished] = _job_records(caplog, "job.finished")
    assert getattr(started, "correlation_id", None) == "corr-job-1"
    assert getattr(finished, "correlation_id", None) == "corr-job-1"
    assert getattr(finished, "status", None) == "Succeeded"
    assert getattr(finished, "count", None) == 3


def test_job_run_generates_and_restores_correlation_id(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="supplyhub.jobs")
    assert get_correlation_id() is None

    with job_run("effectuation_tick"):
        inside = get_correlation_id()

    assert inside
    assert get_correlation_id() is None
    assert getattr(_job_records(caplog, "job.finished")[0], "correlation_id", None) == inside


def test_job_run_failure_is_logged_and_reraised(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="supplyhub.jobs")

    with pytest.raises(RuntimeError):
        with job_run("settlement_tick"):
            raise RuntimeError("database went away")

    [finished] = _job_records(caplog, "job.finished")
    assert finished.levelno == logging.ERROR
    assert getattr(finished, "status", None) == "Failed"
    assert getattr(finished, "error", None) == "database went away"


def test_job_span_carries_job_type_and_correlation(span_exporter: InMemorySpanExporter) -> None:
    with correlation_scope("corr-span-1"), job_run("correction_detection", period_start="2025-01-01"):
        pass

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "job.correction_detection"]
    assert spans
    attributes = spans[-1].attributes
    assert attributes.get("job_type") == "correction_detection"
    assert attributes.get("correlation_id") == "corr-span-1"
    assert attributes.get("period_start") == "2025-01-01"


def test_published_envelope_carries_message_scope() -> None:
    with correlation_scope("corr-evt-1", message_id="msg-evt-1"):
        envelope = events.publish("settlement.completed", run_id="run-1")

    assert envelope["event_type"] == "settlement.completed"
    assert (envelope["correlation_id"], envelope["message_id"]) == ("corr-evt-1", "msg-evt-1")
    assert envelope["run_id"] == "run-1"
    assert events.published_events[-1] is envelope


def test_prefix_subscription_logs_domain_events(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="supplyhub.events")
    seen: list[str] = []
    events.event_bus.subscribe("invoice.", lambda event: seen.append(event.name))
    events.subscribe_event_log(("invoice.",))
    try:
        events.publish("invoice.created", invoice_id="inv-1", total_incl_vat="10.00")
        events.publish("process.completed", process_id="p-1")
    finally:
        events.event_bus.unsubscribe("invoice.", events.log_domain_event)

    assert seen == ["invoice.created"]
    [record] = [record for record in caplog.records if record.name == "supplyhub.events" and record.msg == "invoice.created"]
    assert getattr(record, "invoice_id", None) == "inv-1"
    assert not hasattr(record, "total_incl_vat")
