from __future__ import annotations

import json
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import supplyhub.models  # noqa: F401
from seed_data import GSRN, PRICE_AREA, hours_between, seed_portfolio
from supplyhub.core.database import Base
from supplyhub.lifecycle.schemas import ProcessRequestCreate
from supplyhub.lifecycle.service import ProcessService
from supplyhub.lifecycle.state_machine import ProcessStatus, ProcessType
from supplyhub.messaging.gateway import HubMessage, InMemoryHubGateway, QueueName
from supplyhub.messaging.models import DeadLetter, InboundMessage, InboundStatus, ProcessedMessageId
from supplyhub.messaging.poller import PollOutcome, QueuePoller
from supplyhub.metering.models import MeteringRevision, MeteringSample
from supplyhub.portfolio.models import MeteringPoint, SupplyPeriod
from supplyhub.pricing.models import SpotPrice, Tariff


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def gateway() -> InMemoryHubGateway:
    return InMemoryHubGateway()


@pytest.fixture()
def poller(gateway: InMemoryHubGateway) -> QueuePoller:
    return QueuePoller(gateway=gateway, max_attempts=2, queue_timeout_seconds=30)


def _message(message_id: str, queue: QueueName, message_type: str, payload: object, correlation_id: str | None = None):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return HubMessage(
        message_id=message_id,
        queue=queue,
        message_type=message_type,
        payload=body,
        correlation_id=correlation_id,
    )


def _sent_switch(session: Session, gateway: InMemoryHubGateway):
    session.add(MeteringPoint(id=GSRN, grid_area="344", price_area=PRICE_AREA))
    session.commit()
    service = ProcessService()
    process = service.create_request(
        session,
        ProcessRequestCreate(process_type=ProcessType.SWITCH, metering_point_id=GSRN, effective_date=date(2025, 2, 1)),
    )
    return service.send_request(session, process.id, gateway)


def _series(quantities: list[str]) -> dict:
    hours = hours_between(date(2025, 1, 1), date(2025, 1, 2))
    return {
        "metering_point_id": GSRN,
        "resolution": "PT1H",
        "observations": [
            {"timestamp": hour.isoformat(), "quantity": quantity} for hour, quantity in zip(hours, quantities)
        ],
    }


def test_acknowledgement_moves_process_and_records_processed_id(
    db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller
) -> None:
    process = _sent_switch(db_session, gateway)
    ack = _message(
        "msg-ack-1",
        QueueName.PROCESSES,
        "process_acknowledgement",
        {"correlation_id": process.external_correlation_id, "accepted": True},
        correlation_id=process.external_correlation_id,
    )
    gateway.enqueue(ack)

    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.PROCESSED
    assert ProcessService().get(db_session, process.id).status == ProcessStatus.EFFECTUATION_PENDING
    assert gateway.dequeued == ["msg-ack-1"]
    assert db_session.scalar(select(func.count()).select_from(ProcessedMessageId)) == 1
    inbound = db_session.scalar(select(InboundMessage).where(InboundMessage.message_id == "msg-ack-1"))
    assert inbound.status == InboundStatus.PROCESSED

    # redelivery of the same message id only dequeues
    gateway.enqueue(ack)
    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.SKIPPED
    assert gateway.dequeued == ["msg-ack-1", "msg-ack-1"]
    assert len(ProcessService().get_timeline(db_session, process.id)) == 4

    # a different message carrying the same acknowledgement is a no-op
    gateway.enqueue(
        _message(
            "msg-ack-2",
            QueueName.PROCESSES,
            "process_acknowledgement",
            {"correlation_id": process.external_correlation_id, "accepted": True},
        )
    )
    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.PROCESSED
    assert len(ProcessService().get_timeline(db_session, process.id)) == 4


def test_rejection_acknowledgement(db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller) -> None:
    process = _sent_switch(db_session, gateway)
    gateway.enqueue(
        _message(
            "msg-rej-1",
            QueueName.PROCESSES,
            "process_acknowledgement",
            {"correlation_id": process.external_correlation_id, "accepted": False, "reason": "E47"},
        )
    )

    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.PROCESSED
    rejected = ProcessService().get(db_session, process.id)
    assert rejected.status == ProcessStatus.REJECTED
    assert ProcessService().get_timeline(db_session, process.id)[-1].payload == {"reason": "E47"}


def test_effectuated_override_completes_switch(
    db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller
) -> None:
    process = _sent_switch(db_session, gateway)
    service = ProcessService()
    service.mark_acknowledged(db_session, process.id)
    service.confirm(db_session, process.id)
    gateway.enqueue(
        _message("msg-ovr-1", QueueName.PROCESSES, "market_override", {"metering_point_id": GSRN, "action": "effectuated"})
    )

    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.PROCESSED
    assert service.get(db_session, process.id).status == ProcessStatus.COMPLETED
    assert db_session.scalar(select(SupplyPeriod).where(SupplyPeriod.metering_point_id == GSRN)) is not None


@pytest.mark.parametrize(
    ("message_type", "payload", "reason"),
    [
        ("process_acknowledgement", "{not json", "payload is not JSON"),
        ("weather_report", {"temperature": 3}, "unknown message type"),
        ("process_acknowledgement", {"accepted": True}, "payload rejected"),
        ("spot_prices", {"price_area": "DK1", "prices": []}, "no handler"),
    ],
)
def test_malformed_messages_are_dead_lettered(
    db_session: Session,
    gateway: InMemoryHubGateway,
    poller: QueuePoller,
    message_type: str,
    payload: object,
    reason: str,
) -> None:
    message = _message("msg-bad-1", QueueName.PROCESSES, message_type, payload)
    gateway.enqueue(message)

    assert poller.poll_queue(db_session, QueueName.PROCESSES) is PollOutcome.DEAD_LETTERED
    dead_letter = db_session.scalar(select(DeadLetter))
    assert dead_letter.message_id == "msg-bad-1"
    assert dead_letter.raw_payload == message.payload
    assert reason in dead_letter.reason
    assert dead_letter.resolved is False
    assert gateway.peek(QueueName.PROCESSES) is None
    assert db_session.scalar(select(func.count()).select_from(ProcessedMessageId)) == 0


def test_failing_handler_is_retried_then_dead_lettered(
    db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller
) -> None:
    # point exists but has no supply, so metering is refused
    db_session.add(MeteringPoint(id=GSRN, grid_area="344", price_area=PRICE_AREA))
    db_session.commit()
    gateway.enqueue(_message("msg-met-1", QueueName.METERING, "metering_series", _series(["0.3"] * 24)))

    results = poller.poll_all(db_session, [QueueName.METERING])
    assert results[QueueName.METERING] == {"failed": 1}
    assert gateway.peek(QueueName.METERING).message_id == "msg-met-1"
    inbound = db_session.scalar(select(InboundMessage))
    assert (inbound.status, inbound.attempts) == (InboundStatus.FAILED, 1)

    assert poller.poll_queue(db_session, QueueName.METERING) is PollOutcome.DEAD_LETTERED
    assert gateway.peek(QueueName.METERING) is None
    assert "after 2 attempts" in db_session.scalar(select(DeadLetter)).reason


def test_metering_series_with_negative_values_is_dead_lettered_whole(
    db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller
) -> None:
    seed_portfolio(db_session)
    negative = ["0.3"] * 23 + ["-1"]
    gateway.enqueue(_message("msg-met-0", QueueName.METERING, "metering_series", _series(negative)))

    assert poller.poll_queue(db_session, QueueName.METERING) is PollOutcome.DEAD_LETTERED
    assert "payload rejected" in db_session.scalar(select(DeadLetter)).reason
    assert db_session.scalar(select(func.count()).select_from(MeteringSample)) == 0


def test_metering_series_tracks_revisions(
    db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller
) -> None:
    seed_portfolio(db_session)
    gateway.enqueue(_message("msg-met-1", QueueName.METERING, "metering_series", _series(["0.3"] * 24)))
    assert poller.poll_queue(db_session, QueueName.METERING) is PollOutcome.PROCESSED
    assert db_session.scalar(select(func.count()).select_from(MeteringSample)) == 24

    revised = ["0.3"] * 10 + ["0.9"] + ["0.3"] * 13
    gateway.enqueue(_message("msg-met-2", QueueName.METERING, "metering_series", _series(revised)))
    assert poller.poll_queue(db_session, QueueName.METERING) is PollOutcome.PROCESSED

    assert db_session.scalar(select(func.count()).select_from(MeteringSample)) == 24
    revision = db_session.scalar(select(MeteringRevision))
    assert revision.previous_quantity == Decimal("0.3")
    assert revision.new_quantity == Decimal("0.9")
    assert (revision.previous_source, revision.new_source) == ("msg-met-1", "msg-met-2")


def test_poll_all_drains_price_queue(db_session: Session, gateway: InMemoryHubGateway, poller: QueuePoller) -> None:
    hours = hours_between(date(2025, 1, 1), date(2025, 1, 2))
    gateway.enqueue(
        _message(
            "msg-spot-1",
            QueueName.PRICES,
            "spot_prices",
            {
                "price_area": PRICE_AREA,
                "prices": [{"timestamp": hour.isoformat(), "price_per_kwh": "0.85"} for hour in hours],
            },
        )
    )
    gateway.enqueue(
        _message(
            "msg-tariff-1",
            QueueName.PRICES,
            "tariff_update",
            {"tariff_type": "system", "valid_from": "2025-01-01", "flat_rate": "0.054"},
        )
    )

    results = poller.poll_all(db_session)

    assert results[QueueName.PRICES] == {"processed": 2}
    assert results[QueueName.PROCESSES] == {}
    assert db_session.scalar(select(func.count()).select_from(SpotPrice)) == 24
    tariff = db_session.scalar(select(Tariff))
    assert tariff.flat_rate == Decimal("0.054")
    assert tariff.source_message_id == "msg-tariff-1"


def test_poll_all_respects_queue_time_budget(db_session: Session, gateway: InMemoryHubGateway) -> None:
    ticks = iter([0.0, 0.0, 100.0])
    poller = QueuePoller(gateway=gateway, queue_timeout_seconds=30, clock=lambda: next(ticks, 100.0))
    for index in range(3):
        gateway.enqueue(
            _message(
                f"msg-tariff-{index}",
                QueueName.PRICES,
                "tariff_update",
                {"tariff_type": "system", "valid_from": f"2025-0{index + 1}-01", "flat_rate": "0.054"},
            )
        )

    results = poller.poll_all(db_session, [QueueName.PRICES])

    assert results[QueueName.PRICES] == {"processed": 1}
    assert len(gateway.queues[QueueName.PRICES]) == 2
