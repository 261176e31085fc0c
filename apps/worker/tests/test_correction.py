from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import supplyhub.models  # noqa: F401
from seed_data import GSRN, hours_between, local_midnight, profile, seed_january
from supplyhub.core.database import Base
from supplyhub.core.errors import ConflictError, NotFoundError, ValidationError
from supplyhub.correction.models import CorrectionTrigger
from supplyhub.correction.service import CorrectionService
from supplyhub.metering.repository import SampleRow, metering_repository
from supplyhub.settlement.formula import ChargeType
from supplyhub.settlement.models import SettlementRun, SettlementStatus
from supplyhub.settlement.periods import Period
from supplyhub.settlement.service import SettlementService

JANUARY = Period(date(2025, 1, 1), date(2025, 2, 1))


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
def settled_run(db_session: Session) -> SettlementRun:
    contract = seed_january(db_session)
    return SettlementService().settle_period(db_session, contract, JANUARY)


def _revise_january_15(session: Session) -> None:
    hours = hours_between(date(2025, 1, 15), date(2025, 1, 16))
    revised = {10: "0.75", 17: "1.5", 22: "0.2"}
    metering_repository.store_samples(
        session,
        GSRN,
        [
            SampleRow(
                timestamp=hours[local_hour],
                resolution="PT1H",
                quantity=Decimal(quantity),
                quality_code="revised",
                source_message_id="msg-revision",
            )
            for local_hour, quantity in revised.items()
        ],
    )
    session.commit()


def test_manual_correction_prices_signed_deltas(db_session: Session, settled_run: SettlementRun) -> None:
    _revise_january_15(db_session)

    batch = CorrectionService().trigger_correction(db_session, settled_run.id, note="meter replaced")

    deltas = {line.charge_type: line.delta_amount for line in batch.lines}
    assert deltas == {
        ChargeType.ENERGY: Decimal("0.49"),
        ChargeType.GRID_TARIFF: Decimal("0.20"),
        ChargeType.SYSTEM_TARIFF: Decimal("0.02"),
        ChargeType.TRANSMISSION_TARIFF: Decimal("0.02"),
        ChargeType.ELECTRICITY_TAX: Decimal("0.00"),
    }
    assert all(line.delta_kwh == Decimal("0.35") for line in batch.lines)
    assert (batch.subtotal, batch.vat_amount, batch.total) == (Decimal("0.73"), Decimal("0.18"), Decimal("0.91"))
    assert batch.trigger_type == CorrectionTrigger.MANUAL
    assert batch.note == "meter replaced"
    assert (batch.period_start, batch.period_end) == (JANUARY.start, JANUARY.end)
    # the original run is left untouched
    assert db_session.get(SettlementRun, settled_run.id).total == Decimal("793.14")


def test_revisions_are_only_corrected_once(db_session: Session, settled_run: SettlementRun) -> None:
    _revise_january_15(db_session)
    service = CorrectionService()
    service.trigger_correction(db_session, settled_run.id)

    with pytest.raises(ValidationError):
        service.trigger_correction(db_session, settled_run.id)
    assert service.run_correction_detection(db_session) == []
    assert len(service.list_batches(db_session, settled_run.id)) == 1


def test_detection_opens_automatic_batch(db_session: Session, settled_run: SettlementRun) -> None:
    service = CorrectionService()
    assert service.run_correction_detection(db_session) == []

    _revise_january_15(db_session)
    [batch] = service.run_correction_detection(db_session)

    assert batch.trigger_type == CorrectionTrigger.AUTO
    assert batch.original_run_id == settled_run.id
    assert batch.total == Decimal("0.91")


def test_sub_range_outside_revisions_has_nothing_to_correct(db_session: Session, settled_run: SettlementRun) -> None:
    _revise_january_15(db_session)

    with pytest.raises(ValidationError):
        CorrectionService().trigger_correction(db_session, settled_run.id, start=date(2025, 1, 20), end=date(2025, 2, 1))

    batch = CorrectionService().trigger_correction(
        db_session, settled_run.id, start=date(2025, 1, 15), end=date(2025, 1, 16)
    )
    assert (batch.period_start, batch.period_end) == (date(2025, 1, 15), date(2025, 1, 16))


def test_invalid_correction_requests(db_session: Session, settled_run: SettlementRun) -> None:
    service = CorrectionService()

    with pytest.raises(NotFoundError):
        service.trigger_correction(db_session, uuid.uuid4())
    with pytest.raises(ValidationError):
        service.trigger_correction(db_session, settled_run.id, start=date(2024, 12, 1), end=date(2025, 1, 10))

    failed = SettlementRun(
        billing_period_id=settled_run.billing_period_id,
        metering_point_id=GSRN,
        grid_area="344",
        version=2,
        status=SettlementStatus.FAILED,
        error_details="incomplete",
    )
    db_session.add(failed)
    db_session.commit()
    with pytest.raises(ConflictError):
        service.trigger_correction(db_session, failed.id)


def _store_jan_15(session: Session, quantities: dict[int, Decimal], source: str) -> None:
    hours = hours_between(date(2025, 1, 15), date(2025, 1, 16))
    metering_repository.store_samples(
        session,
        GSRN,
        [
            SampleRow(
                timestamp=hours[local_hour],
                resolution="PT1H",
                quantity=quantity,
                quality_code="revised",
                source_message_id=source,
            )
            for local_hour, quantity in quantities.items()
        ],
    )
    session.commit()


def test_revision_reverted_to_original_prices_to_zero(db_session: Session, settled_run: SettlementRun) -> None:
    _store_jan_15(db_session, {10: Decimal("0.75")}, "msg-revision")
    _store_jan_15(db_session, {10: Decimal("0.5")}, "msg-revert")

    batch = CorrectionService().trigger_correction(db_session, settled_run.id)

    assert all(line.delta_kwh == Decimal("0") for line in batch.lines)
    assert all(line.delta_amount == Decimal("0") for line in batch.lines)
    assert (batch.subtotal, batch.total) == (Decimal("0"), Decimal("0"))


def test_a_revised_day_out_of_a_settled_month_prices_only_that_day(
    db_session: Session, settled_run: SettlementRun
) -> None:
    _store_jan_15(db_session, {hour: profile(hour)[0] + Decimal("0.1") for hour in range(24)}, "msg-revision")

    batch = CorrectionService().trigger_correction(db_session, settled_run.id)

    revisions = metering_repository.get_revisions(
        db_session, GSRN, local_midnight(JANUARY.start), local_midnight(JANUARY.end)
    )
    assert len(revisions) == 24
    assert all(line.delta_kwh == Decimal("2.4") for line in batch.lines)
    deltas = {line.charge_type: line.delta_amount for line in batch.lines}
    assert deltas[ChargeType.ENERGY] == Decimal("1.93")
    assert all(amount > 0 for amount in deltas.values())
    assert (batch.subtotal, batch.vat_amount, batch.total) == (Decimal("2.63"), Decimal("0.66"), Decimal("3.29"))

    _store_jan_15(db_session, {hour: profile(hour)[0] for hour in range(24)}, "msg-restore")
    reversal = CorrectionService().trigger_correction(db_session, settled_run.id)

    assert all(line.delta_kwh == Decimal("-2.4") for line in reversal.lines)
    assert reversal.total == -batch.total
