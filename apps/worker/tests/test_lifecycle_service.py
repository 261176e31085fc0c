from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import supplyhub.models  # noqa: F401
from supplyhub import events
from supplyhub.billing.models import Invoice, InvoiceType
from supplyhub.core.database import Base
from supplyhub.core.errors import ConcurrencyConflict, ConflictError, NotFoundError, ValidationError
from supplyhub.lifecycle.effectuation import EffectuationService
from supplyhub.lifecycle.schemas import ProcessRequestCreate
from supplyhub.lifecycle.scheduler import due_for_effectuation, run_effectuation_tick
from supplyhub.lifecycle.service import ProcessService
from supplyhub.lifecycle.state_machine import ProcessStatus, ProcessType
from supplyhub.messaging.gateway import InMemoryHubGateway
from supplyhub.portfolio.models import BillingFrequency, Contract, MeteringPoint, PaymentModel, Product, SupplyPeriod
from supplyhub.portfolio.repository import ContractRepository, SupplyPeriodRepository

GSRN = "571313100000012345"


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


def _seed_point(
    session: Session,
    *,
    supply_start: date | None = None,
    payment_model: PaymentModel = PaymentModel.DIRECT,
    contract_start: date = date(2025, 2, 1),
) -> None:
    session.add(
        MeteringPoint(
            id=GSRN,
            grid_area="344",
            price_area="DK1",
            activated_at=supply_start,
        )
    )
    if supply_start is not None:
        session.add(SupplyPeriod(metering_point_id=GSRN, start_date=supply_start))
    product = Product(name="Spot", margin_per_kwh=Decimal("0.04"), subscription_per_month=Decimal("39"))
    session.add(product)
    session.flush()
    session.add(
        Contract(
            metering_point_id=GSRN,
            product_id=product.id,
            payment_model=payment_model,
            billing_frequency=BillingFrequency.MONTHLY,
            start_date=contract_start,
        )
    )
    session.commit()


def _create(session: Session, process_type: ProcessType, effective_date: date = date(2025, 2, 1)):
    return ProcessService().create_request(
        session,
        ProcessRequestCreate(process_type=process_type, metering_point_id=GSRN, effective_date=effective_date),
    )


def _awaiting_effectuation(session: Session, gateway: InMemoryHubGateway, **seed) -> uuid.UUID:
    _seed_point(session, **seed)
    service = ProcessService()
    process = _create(session, ProcessType.SWITCH)
    service.send_request(session, process.id, gateway)
    service.mark_acknowledged(session, process.id)
    service.confirm(session, process.id)
    return process.id


def test_switch_happy_path_records_timeline(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)
    service = ProcessService()

    process = service.get(db_session, process_id)
    assert process.status == ProcessStatus.EFFECTUATION_PENDING
    assert process.external_correlation_id is not None
    assert gateway.sent[0][0] == "switch"
    assert gateway.sent[0][1]["metering_point_id"] == GSRN

    timeline = service.get_timeline(db_session, process_id)
    assert [event.event_type for event in timeline] == ["created", "sent", "acknowledged", "awaiting_effectuation"]
    assert all(earlier.occurred_at <= later.occurred_at for earlier, later in zip(timeline, timeline[1:]))

    found, is_cancel = service.find_by_correlation_id(db_session, process.external_correlation_id)
    assert found.id == process_id
    assert is_cancel is False


def test_second_open_process_for_point_is_rejected(db_session: Session, gateway: InMemoryHubGateway) -> None:
    _awaiting_effectuation(db_session, gateway)

    with pytest.raises(ConflictError):
        _create(db_session, ProcessType.SWITCH)


def test_stale_transition_raises_concurrency_conflict(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)

    with pytest.raises(ConcurrencyConflict) as excinfo:
        ProcessService().mark_acknowledged(db_session, process_id)

    assert excinfo.value.expected == "sent"
    assert excinfo.value.actual == "effectuation_pending"
    assert ProcessService().get(db_session, process_id).status == ProcessStatus.EFFECTUATION_PENDING


def test_hub_rejection_on_send(db_session: Session, gateway: InMemoryHubGateway) -> None:
    _seed_point(db_session)
    gateway.rejections[GSRN] = "E16 unknown metering point"
    service = ProcessService()
    process = _create(db_session, ProcessType.SWITCH)

    rejected = service.send_request(db_session, process.id, gateway)

    assert rejected.status == ProcessStatus.REJECTED
    timeline = service.get_timeline(db_session, process.id)
    assert [event.event_type for event in timeline] == ["created", "sent", "rejected"]
    assert timeline[-1].payload == {"reason": "E16 unknown metering point"}
    # a rejected process no longer blocks a new request
    assert _create(db_session, ProcessType.SWITCH).status == ProcessStatus.PENDING


def test_cancellation_round_trip(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)
    service = ProcessService()

    pending = service.request_cancellation(db_session, process_id, gateway, reason="customer regret")
    assert pending.status == ProcessStatus.CANCELLATION_PENDING
    assert gateway.sent[-1][0] == "cancel"

    found, is_cancel = service.find_by_correlation_id(db_session, pending.cancel_correlation_id)
    assert found.id == process_id
    assert is_cancel is True

    reverted = service.revert_cancellation(db_session, process_id, reason="too late")
    assert reverted.status == ProcessStatus.EFFECTUATION_PENDING

    service.request_cancellation(db_session, process_id, gateway, reason="customer regret")
    cancelled = service.mark_cancelled(db_session, process_id)
    assert cancelled.status == ProcessStatus.CANCELLED
    assert service.find_open_for_point(db_session, GSRN) is None


def test_auto_cancel_from_hub(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)

    cancelled = ProcessService().auto_cancel(db_session, process_id, reason="competing switch")

    assert cancelled.status == ProcessStatus.CANCELLED
    assert ProcessService().get_timeline(db_session, process_id)[-1].event_type == "auto_cancelled"


def test_move_out_requires_active_supply_and_valid_date(db_session: Session) -> None:
    _seed_point(db_session)
    with pytest.raises(ConflictError):
        _create(db_session, ProcessType.MOVE_OUT)

    db_session.add(SupplyPeriod(metering_point_id=GSRN, start_date=date(2025, 1, 1)))
    db_session.commit()
    with pytest.raises(ValidationError):
        _create(db_session, ProcessType.MOVE_OUT, effective_date=date(2024, 12, 1))

    assert _create(db_session, ProcessType.MOVE_OUT, effective_date=date(2025, 3, 1)).status == ProcessStatus.PENDING


def test_unknown_point_and_unknown_process(db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        _create(db_session, ProcessType.SWITCH)
    with pytest.raises(NotFoundError):
        ProcessService().get(db_session, uuid.uuid4())
    with pytest.raises(NotFoundError):
        ProcessService().confirm(db_session, uuid.uuid4())


def test_effectuation_tick_completes_due_switch_and_opens_supply(
    db_session: Session, gateway: InMemoryHubGateway
) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)

    assert due_for_effectuation(db_session, date(2025, 1, 31)) == []
    completed = run_effectuation_tick(db_session, date(2025, 2, 1))

    assert completed == [process_id]
    assert ProcessService().get(db_session, process_id).status == ProcessStatus.COMPLETED
    supply = SupplyPeriodRepository().get_active(db_session, GSRN)
    assert supply is not None
    assert supply.start_date == date(2025, 2, 1)
    assert db_session.get(MeteringPoint, GSRN).activated_at == date(2025, 2, 1)
    assert "process.completed" in {envelope["event_type"] for envelope in events.published_events}

    # a second tick finds nothing left to do
    assert run_effectuation_tick(db_session, date(2025, 2, 2)) == []


def test_activation_bills_opening_aconto_prepayment(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway, payment_model=PaymentModel.ACONTO)

    EffectuationService().complete(db_session, process_id, today=date(2025, 2, 1))

    invoice = db_session.scalar(select(Invoice))
    assert invoice is not None
    assert invoice.invoice_type == InvoiceType.ACONTO_PREPAYMENT
    assert (invoice.period_start, invoice.period_end) == (date(2025, 2, 1), date(2025, 3, 1))
    assert len(invoice.lines) == 1


def test_offboarding_closes_supply_and_contract(db_session: Session, gateway: InMemoryHubGateway) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)
    EffectuationService().complete(db_session, process_id, today=date(2025, 2, 1))
    service = ProcessService()

    offboarding = service.start_offboarding(db_session, process_id, supply_end_date=date(2025, 4, 1))

    assert offboarding.status == ProcessStatus.OFFBOARDING_STARTED
    assert SupplyPeriodRepository().get_active(db_session, GSRN) is None
    assert ContractRepository().get_latest(db_session, GSRN).end_date == date(2025, 4, 1)
    assert service.get_timeline(db_session, process_id)[-1].payload == {"supply_end_date": "2025-04-01"}

    with pytest.raises(ConflictError):
        service.start_offboarding(db_session, process_id, supply_end_date=date(2025, 4, 1))


@pytest.mark.parametrize(
    "transition",
    [
        lambda service, session, process_id: service.mark_cancelled(session, process_id, expected=ProcessStatus.PENDING),
        lambda service, session, process_id: service.revert_cancellation(
            session, process_id, reason="too late", expected=ProcessStatus.PENDING
        ),
        lambda service, session, process_id: service.auto_cancel(
            session, process_id, reason="competing switch", expected=ProcessStatus.PENDING
        ),
        lambda service, session, process_id: service.start_offboarding(
            session, process_id, supply_end_date=date(2025, 4, 1), expected=ProcessStatus.PENDING
        ),
        lambda service, session, process_id: service.mark_final_settled(session, process_id, expected=ProcessStatus.PENDING),
    ],
    ids=["mark_cancelled", "revert_cancellation", "auto_cancel", "start_offboarding", "mark_final_settled"],
)
def test_transitions_honour_the_callers_expected_status(
    db_session: Session, gateway: InMemoryHubGateway, transition
) -> None:
    process_id = _awaiting_effectuation(db_session, gateway)
    EffectuationService().complete(db_session, process_id, today=date(2025, 2, 1))
    service = ProcessService()

    with pytest.raises(ConcurrencyConflict) as excinfo:
        transition(service, db_session, process_id)

    assert excinfo.value.expected == "pending"
    assert excinfo.value.actual == "completed"
    assert service.get(db_session, process_id).status == ProcessStatus.COMPLETED
    assert SupplyPeriodRepository().get_active(db_session, GSRN) is not None
