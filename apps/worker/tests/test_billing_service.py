from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import supplyhub.models  # noqa: F401
from seed_data import GSRN, seed_january, seed_metering, seed_portfolio, seed_spot_prices
from supplyhub.billing.aconto import AcontoEstimate, AcontoEstimator
from supplyhub.billing.models import Invoice, InvoiceLine, InvoiceLineType, InvoiceStatus, InvoiceType
from supplyhub.billing.service import InvoicingService
from supplyhub.core.database import Base
from supplyhub.core.errors import ConcurrencyConflict, ValidationError
from supplyhub.portfolio.models import Contract, PaymentModel
from supplyhub.settlement.formula import round_money
from supplyhub.settlement.models import SettlementRun
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


class FixedEstimator:
    def __init__(self, amount_incl_vat: str) -> None:
        self.amount_incl_vat = Decimal(amount_incl_vat)
        self.periods: list[Period] = []

    def estimate(self, session: Session, contract: Contract, period: Period) -> AcontoEstimate:
        self.periods.append(period)
        return AcontoEstimate(
            period=period,
            kwh=Decimal("400"),
            price_per_kwh=Decimal("1.5"),
            subscriptions=Decimal("40"),
            amount_ex_vat=round_money(self.amount_incl_vat / Decimal("1.25")),
            amount_incl_vat=self.amount_incl_vat,
        )


def _settle_january(session: Session, contract: Contract) -> SettlementRun:
    return SettlementService().settle_period(session, contract, JANUARY)


def _line(invoice: Invoice, line_type: InvoiceLineType) -> InvoiceLine:
    return next(line for line in invoice.lines if line.line_type == line_type)


def test_direct_settlement_invoice_is_created_once(db_session: Session) -> None:
    contract = seed_january(db_session)
    run = _settle_january(db_session, contract)
    service = InvoicingService(estimator=FixedEstimator("800"))

    invoice = service.invoice_run(db_session, run.id, today=date(2025, 2, 2))

    assert invoice.invoice_type == InvoiceType.SETTLEMENT
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.settlement_run_id == run.id
    assert (invoice.subtotal_ex_vat, invoice.vat_amount, invoice.total_incl_vat) == (
        Decimal("634.51"),
        Decimal("158.63"),
        Decimal("793.14"),
    )
    assert len(invoice.lines) == 7
    assert _line(invoice, InvoiceLineType.ENERGY).quantity_kwh == Decimal("409.2")
    assert sum((line.amount_incl_vat for line in invoice.lines), Decimal("0")) == invoice.total_incl_vat

    assert service.invoice_run(db_session, run.id, today=date(2025, 2, 3)).id == invoice.id
    assert len(db_session.scalars(select(Invoice)).all()) == 1


def test_aconto_settlement_deducts_payments_and_bills_next_period(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)
    run = _settle_january(db_session, contract)
    estimator = FixedEstimator("800")
    service = InvoicingService(estimator=estimator)
    service.record_aconto_payment(db_session, GSRN, JANUARY.start, JANUARY.end, Decimal("700"))

    invoice = service.invoice_run(db_session, run.id, today=date(2025, 2, 2))

    deduction = _line(invoice, InvoiceLineType.ACONTO_DEDUCTION)
    assert (deduction.amount_ex_vat, deduction.amount_incl_vat) == (Decimal("-560.00"), Decimal("-700.00"))
    prepayment = _line(invoice, InvoiceLineType.ACONTO_PREPAYMENT)
    assert (prepayment.period_start, prepayment.period_end) == (date(2025, 2, 1), date(2025, 3, 1))
    assert (prepayment.amount_ex_vat, prepayment.amount_incl_vat) == (Decimal("640.00"), Decimal("800.00"))
    assert estimator.periods == [Period(date(2025, 2, 1), date(2025, 3, 1))]
    assert (invoice.subtotal_ex_vat, invoice.vat_amount, invoice.total_incl_vat) == (
        Decimal("714.51"),
        Decimal("178.63"),
        Decimal("893.14"),
    )


def test_late_settlement_skips_next_prepayment(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)
    run = _settle_january(db_session, contract)
    estimator = FixedEstimator("800")

    invoice = InvoicingService(estimator=estimator).invoice_run(db_session, run.id, today=date(2025, 3, 5))

    assert estimator.periods == []
    assert InvoiceLineType.ACONTO_DEDUCTION not in {line.line_type for line in invoice.lines}
    assert InvoiceLineType.ACONTO_PREPAYMENT not in {line.line_type for line in invoice.lines}
    assert invoice.total_incl_vat == Decimal("793.14")


def test_activation_prepayment_is_idempotent_and_skips_retroactive_periods(db_session: Session) -> None:
    seed_portfolio(db_session, payment_model=PaymentModel.ACONTO)
    service = InvoicingService(estimator=FixedEstimator("800"))

    assert service.bill_aconto_on_activation(db_session, GSRN, date(2025, 1, 1), today=date(2025, 2, 5)) is None

    invoice = service.bill_aconto_on_activation(db_session, GSRN, date(2025, 1, 1), today=date(2025, 1, 10))
    assert invoice.invoice_type == InvoiceType.ACONTO_PREPAYMENT
    assert (invoice.period_start, invoice.period_end) == (JANUARY.start, JANUARY.end)
    assert (invoice.subtotal_ex_vat, invoice.vat_amount, invoice.total_incl_vat) == (
        Decimal("640.00"),
        Decimal("160.00"),
        Decimal("800.00"),
    )
    again = service.bill_aconto_on_activation(db_session, GSRN, date(2025, 1, 1), today=date(2025, 1, 11))
    assert again.id == invoice.id


def test_payment_spanning_several_periods_is_deducted_pro_rata(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)
    run = _settle_january(db_session, contract)
    service = InvoicingService(estimator=FixedEstimator("800"))
    # one quarterly payment, 90 days
    service.record_aconto_payment(db_session, GSRN, date(2025, 1, 1), date(2025, 4, 1), Decimal("1800"))

    assert service.paid_for_period(db_session, GSRN, JANUARY) == Decimal("620.00")
    assert service.paid_for_period(db_session, GSRN, Period(date(2025, 2, 1), date(2025, 3, 1))) == Decimal("560.00")

    invoice = service.invoice_run(db_session, run.id, today=date(2025, 2, 2))
    deduction = _line(invoice, InvoiceLineType.ACONTO_DEDUCTION)
    assert (deduction.amount_ex_vat, deduction.amount_incl_vat) == (Decimal("-496.00"), Decimal("-620.00"))


def test_direct_contract_gets_no_prepayment(db_session: Session) -> None:
    seed_portfolio(db_session)

    assert InvoicingService().bill_aconto_on_activation(db_session, GSRN, date(2025, 1, 1), today=date(2025, 1, 2)) is None


def test_amounts_attributed_to_a_period_reconcile_to_its_settlement(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)
    service = InvoicingService(estimator=FixedEstimator("800"))
    service.bill_aconto_on_activation(db_session, GSRN, date(2025, 1, 1), today=date(2025, 1, 10))
    service.record_aconto_payment(db_session, GSRN, JANUARY.start, JANUARY.end, Decimal("800"))
    run = _settle_january(db_session, contract)
    service.invoice_run(db_session, run.id, today=date(2025, 2, 2))

    january_lines = db_session.scalars(select(InvoiceLine).where(InvoiceLine.period_start == JANUARY.start)).all()

    assert sum((line.amount_incl_vat for line in january_lines), Decimal("0")) == run.total


def test_tick_invoices_runs_and_tops_up_prepayments(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)
    _settle_january(db_session, contract)
    service = InvoicingService(estimator=FixedEstimator("800"))

    created = service.run_invoicing_tick(db_session, date(2025, 2, 2))

    assert [invoice.invoice_type for invoice in created] == [InvoiceType.SETTLEMENT]
    assert service.run_invoicing_tick(db_session, date(2025, 2, 3)) == []


def test_cancel_and_reissue(db_session: Session) -> None:
    contract = seed_january(db_session)
    run = _settle_january(db_session, contract)
    service = InvoicingService()
    invoice = service.invoice_run(db_session, run.id, today=date(2025, 2, 2))

    assert service.mark_sent(db_session, invoice.id).status == InvoiceStatus.SENT
    assert service.cancel_invoice(db_session, invoice.id).status == InvoiceStatus.CANCELLED
    with pytest.raises(ConcurrencyConflict):
        service.cancel_invoice(db_session, invoice.id)

    reissued = service.invoice_run(db_session, run.id, today=date(2025, 2, 3))
    assert reissued.id != invoice.id
    assert reissued.status == InvoiceStatus.DRAFT


def test_payment_validation(db_session: Session) -> None:
    service = InvoicingService()

    with pytest.raises(ValidationError):
        service.record_aconto_payment(db_session, GSRN, date(2025, 2, 1), date(2025, 1, 1), Decimal("100"))
    with pytest.raises(ValidationError):
        service.record_aconto_payment(db_session, GSRN, JANUARY.start, JANUARY.end, Decimal("0"))


def test_estimator_falls_back_to_defaults_without_history(db_session: Session) -> None:
    contract = seed_portfolio(db_session, payment_model=PaymentModel.ACONTO)

    estimate = AcontoEstimator().estimate(db_session, contract, Period(date(2025, 2, 1), date(2025, 3, 1)))

    assert round_money(estimate.kwh) == Decimal("333.33")
    assert estimate.price_per_kwh == Decimal("2.50")
    assert estimate.subscriptions == Decimal("39.00")
    assert (estimate.amount_ex_vat, estimate.amount_incl_vat) == (Decimal("872.33"), Decimal("1090.41"))


def test_estimator_prices_from_recent_spot_and_tariffs(db_session: Session) -> None:
    contract = seed_january(db_session, payment_model=PaymentModel.ACONTO)

    price = AcontoEstimator().expected_price_per_kwh(db_session, contract, date(2025, 2, 1))

    # mean spot 0.7667 + margin 0.04 + mean grid 0.19 + flat 0.111
    assert round_money(price) == Decimal("1.11")


def test_erroneous_switch_credits_every_settled_period(db_session: Session) -> None:
    contract = seed_january(db_session)
    seed_spot_prices(db_session, date(2025, 2, 1), date(2025, 3, 1))
    seed_metering(db_session, date(2025, 2, 1), date(2025, 3, 1))
    settlement = SettlementService()
    service = InvoicingService()
    january = service.invoice_run(db_session, _settle_january(db_session, contract).id, today=date(2025, 2, 2))
    february_run = settlement.settle_period(db_session, contract, Period(date(2025, 2, 1), date(2025, 3, 1)))
    february = service.invoice_run(db_session, february_run.id, today=date(2025, 3, 2))
    service.mark_sent(db_session, january.id)

    assert (january.total_incl_vat, february.total_incl_vat) == (Decimal("793.14"), Decimal("727.02"))

    reversal = service.credit_erroneous_switch(db_session, GSRN, date(2025, 1, 1))

    assert [invoice.id for invoice in reversal.invoices] == [january.id, february.id]
    assert all(invoice.status == InvoiceStatus.CREDITED for invoice in reversal.invoices)
    assert reversal.total_credited == Decimal("1520.16")
    assert service.credit_erroneous_switch(db_session, GSRN, date(2025, 1, 1)).total_credited == Decimal("0.00")
    assert service.run_invoicing_tick(db_session, today=date(2025, 3, 3)) == []


def test_erroneous_switch_from_a_later_date_keeps_earlier_invoices(db_session: Session) -> None:
    contract = seed_january(db_session)
    service = InvoicingService()
    january = service.invoice_run(db_session, _settle_january(db_session, contract).id, today=date(2025, 2, 2))

    reversal = service.credit_erroneous_switch(db_session, GSRN, date(2025, 2, 1))

    assert reversal.invoices == ()
    assert db_session.get(Invoice, january.id).status == InvoiceStatus.DRAFT
