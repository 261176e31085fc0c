from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from supplyhub import events
from supplyhub.billing.aconto import AcontoEstimator, Estimator
from supplyhub.billing.models import AcontoPayment, Invoice, InvoiceLine, InvoiceLineType, InvoiceStatus, InvoiceType
from supplyhub.core.clock import local_today, utcnow
from supplyhub.core.config import get_settings
from supplyhub.core.errors import ConcurrencyConflict, ConflictError, NotFoundError, ValidationError
from supplyhub.jobs import job_run
from supplyhub.market_rules.validator import MarketRules
from supplyhub.metrics import observe_concurrency_conflict, observe_invoice_created
from supplyhub.portfolio.models import Contract, PaymentModel
from supplyhub.portfolio.repository import ContractRepository, SupplyPeriodRepository
from supplyhub.settlement.formula import ZERO, ChargeType, round_money
from supplyhub.settlement.models import SettlementRun, SettlementStatus
from supplyhub.settlement.periods import Period, is_period_due, period_end_for


logger = logging.getLogger("supplyhub.billing")
tracer = trace.get_tracer("supplyhub.billing")

_DESCRIPTIONS = {
    ChargeType.ENERGY: "Electricity",
    ChargeType.GRID_TARIFF: "Grid tariff",
    ChargeType.SYSTEM_TARIFF: "System tariff",
    ChargeType.TRANSMISSION_TARIFF: "Transmission tariff",
    ChargeType.ELECTRICITY_TAX: "Electricity tax",
    ChargeType.GRID_SUBSCRIPTION: "Grid subscription",
    ChargeType.SUPPLIER_SUBSCRIPTION: "Supplier subscription",
    ChargeType.PRODUCTION_CREDIT: "Solar production credit",
}
_CANCELLABLE = (InvoiceStatus.DRAFT, InvoiceStatus.SENT)


def ex_vat(amount_incl_vat: Decimal, vat_rate: Decimal) -> Decimal:
    return round_money(amount_incl_vat / (1 + vat_rate))


@dataclass(frozen=True, slots=True)
class SwitchReversal:
    metering_point_id: str
    invoices: tuple[Invoice, ...]
    total_credited: Decimal


@dataclass(slots=True)
class InvoicingService:
    estimator: Estimator = field(default_factory=AcontoEstimator)
    rules: MarketRules = field(default_factory=MarketRules)
    contract_repository: ContractRepository = ContractRepository()
    supply_period_repository: SupplyPeriodRepository = SupplyPeriodRepository()

    def invoice_run(self, session: Session, run_id: uuid.UUID, *, today: date | None = None) -> Invoice:
        """Bill a completed settlement run once.

        Aconto contracts also get the deduction of recorded prepayments and, while
        the following period is still open, its prepayment.
        """
        today = today or local_today()
        run = session.scalar(
            select(SettlementRun).where(SettlementRun.id == run_id).options(selectinload(SettlementRun.lines))
        )
        if run is None:
            raise NotFoundError("settlement_run", run_id)
        if run.status != SettlementStatus.COMPLETED:
            raise ConflictError(f"settlement run {run_id} is {run.status.value}, only completed runs can be invoiced")

        period = Period(start=run.billing_period.period_start, end=run.billing_period.period_end)
        contract = self.contract_repository.get_for_period(session, run.metering_point_id, period.start, period.end)
        if contract is None:
            raise NotFoundError("contract", f"{run.metering_point_id}@{period.start.isoformat()}")

        existing = self.find_invoice(session, contract.id, period, InvoiceType.SETTLEMENT)
        if existing is not None:
            return existing

        vat_rate = get_settings().vat_rate
        lines = [
            InvoiceLine(
                line_type=InvoiceLineType(line.charge_type.value),
                description=_DESCRIPTIONS[line.charge_type],
                period_start=period.start,
                period_end=period.end,
                quantity_kwh=line.total_kwh,
                amount_ex_vat=line.amount,
                amount_incl_vat=line.amount + line.vat_amount,
            )
            for line in sorted(run.lines, key=lambda line: list(ChargeType).index(line.charge_type))
        ]

        if contract.payment_model == PaymentModel.ACONTO:
            paid = self.paid_for_period(session, run.metering_point_id, period)
            if paid > ZERO:
                lines.append(
                    InvoiceLine(
                        line_type=InvoiceLineType.ACONTO_DEDUCTION,
                        description="Aconto paid for the period",
                        period_start=period.start,
                        period_end=period.end,
                        quantity_kwh=None,
                        amount_ex_vat=-ex_vat(paid, vat_rate),
                        amount_incl_vat=-paid,
                    )
                )
            next_period = Period(start=period.end, end=period_end_for(period.end, contract.billing_frequency))
            if contract.end_date is None and not is_period_due(next_period, today):
                estimate = self.estimator.estimate(session, contract, next_period)
                lines.append(self._prepayment_line(next_period, estimate.amount_incl_vat, vat_rate))

        return self._create_invoice(
            session,
            contract,
            InvoiceType.SETTLEMENT,
            period,
            lines,
            settlement_run_id=run.id,
        )

    def bill_aconto_on_activation(
        self,
        session: Session,
        metering_point_id: str,
        activation_date: date,
        *,
        today: date | None = None,
    ) -> Invoice | None:
        """Prepayment invoice for the period a new aconto supply starts in.

        Returns None when the contract is not aconto, or when the period has already
        closed and will be settled directly instead.
        """
        today = today or local_today()
        rule = self.rules.can_bill_aconto(session, metering_point_id)
        if not rule.valid:
            logger.info("invoice.aconto_not_eligible", extra={"metering_point_id": metering_point_id, "error": rule.reason})
            return None
        contract = self.contract_repository.get_active(session, metering_point_id)
        if contract is None or contract.payment_model != PaymentModel.ACONTO:
            return None

        start = max(activation_date, contract.start_date)
        period = Period(start=start, end=period_end_for(start, contract.billing_frequency))
        if is_period_due(period, today):
            logger.info(
                "invoice.aconto_skipped_retroactive",
                extra={
                    "metering_point_id": metering_point_id,
                    "period_start": period.start.isoformat(),
                    "period_end": period.end.isoformat(),
                },
            )
            return None

        existing = self.find_invoice(session, contract.id, period, InvoiceType.ACONTO_PREPAYMENT)
        if existing is not None:
            return existing

        estimate = self.estimator.estimate(session, contract, period)
        line = self._prepayment_line(period, estimate.amount_incl_vat, get_settings().vat_rate)
        return self._create_invoice(session, contract, InvoiceType.ACONTO_PREPAYMENT, period, [line])

    def record_aconto_payment(
        self,
        session: Session,
        metering_point_id: str,
        period_start: date,
        period_end: date,
        amount: Decimal,
        paid_at: datetime | None = None,
    ) -> AcontoPayment:
        if period_end <= period_start:
            raise ValidationError("aconto payment period end must be after its start")
        if amount <= 0:
            raise ValidationError("aconto payment amount must be positive")
        payment = AcontoPayment(
            metering_point_id=metering_point_id,
            period_start=period_start,
            period_end=period_end,
            amount=round_money(amount),
            paid_at=paid_at or utcnow(),
        )
        session.add(payment)
        session.commit()
        session.refresh(payment)
        logger.info(
            "aconto.payment_recorded",
            extra={
                "metering_point_id": metering_point_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
            },
        )
        return payment

    def paid_for_period(self, session: Session, metering_point_id: str, period: Period) -> Decimal:
        """Aconto paid towards ``period``; a payment spanning other days counts pro rata by day."""
        payments = session.scalars(
            select(AcontoPayment).where(
                AcontoPayment.metering_point_id == metering_point_id,
                AcontoPayment.period_start < period.end,
                AcontoPayment.period_end > period.start,
            )
        )
        total = ZERO
        for payment in payments:
            overlap = (min(payment.period_end, period.end) - max(payment.period_start, period.start)).days
            covered = (payment.period_end - payment.period_start).days
            total += Decimal(payment.amount) * Decimal(overlap) / Decimal(covered)
        return round_money(total)

    def find_invoice(
        self, session: Session, contract_id: uuid.UUID, period: Period, invoice_type: InvoiceType
    ) -> Invoice | None:
        return session.scalar(
            select(Invoice).where(
                Invoice.contract_id == contract_id,
                Invoice.period_start == period.start,
                Invoice.period_end == period.end,
                Invoice.invoice_type == invoice_type,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
        )

    def mark_sent(self, session: Session, invoice_id: uuid.UUID) -> Invoice:
        return self._set_status(session, invoice_id, expected=(InvoiceStatus.DRAFT,), target=InvoiceStatus.SENT)

    def cancel_invoice(self, session: Session, invoice_id: uuid.UUID) -> Invoice:
        invoice = self._set_status(session, invoice_id, expected=_CANCELLABLE, target=InvoiceStatus.CANCELLED)
        events.publish(
            "invoice.cancelled",
            invoice_id=str(invoice.id),
            metering_point_id=invoice.metering_point_id,
        )
        return invoice

    def credit_erroneous_switch(self, session: Session, metering_point_id: str, since: date) -> SwitchReversal:
        """Credit every open settlement invoice of a supply the hub declared erroneous from ``since`` on.

        Invoices already cancelled or credited are left alone, so a repeated
        reversal credits nothing further.
        """
        invoice_ids = session.scalars(
            select(Invoice.id)
            .where(
                Invoice.metering_point_id == metering_point_id,
                Invoice.invoice_type == InvoiceType.SETTLEMENT,
                Invoice.status.in_(list(_CANCELLABLE)),
                Invoice.period_end > since,
            )
            .order_by(Invoice.period_start)
        ).all()
        credited = tuple(
            self._set_status(session, invoice_id, expected=_CANCELLABLE, target=InvoiceStatus.CREDITED)
            for invoice_id in invoice_ids
        )
        total = round_money(sum((invoice.total_incl_vat for invoice in credited), ZERO))

        logger.info(
            "invoice.switch_reversed",
            extra={
                "metering_point_id": metering_point_id,
                "period_start": since.isoformat(),
                "count": len(credited),
                "outcome": str(total),
            },
        )
        events.publish(
            "invoice.credited",
            metering_point_id=metering_point_id,
            invoice_ids=[str(invoice.id) for invoice in credited],
            total_credited=str(total),
        )
        return SwitchReversal(metering_point_id=metering_point_id, invoices=credited, total_credited=total)

    def run_invoicing_tick(self, session: Session, today: date | None = None) -> list[Invoice]:
        """Invoice every uninvoiced latest completed run and top up missing opening prepayments."""
        today = today or local_today()
        created: list[Invoice] = []
        with job_run("invoicing", today=today.isoformat()) as summary:
            for run_id in self._uninvoiced_runs(session):
                try:
                    invoice = self.invoice_run(session, run_id, today=today)
                except NotFoundError as exc:
                    logger.warning("invoice.skipped", extra={"run_id": str(run_id), "error": str(exc)})
                    continue
                created.append(invoice)

            for contract in self.contract_repository.list_active(session):
                if contract.payment_model != PaymentModel.ACONTO:
                    continue
                supply = self.supply_period_repository.get_active(session, contract.metering_point_id)
                if supply is None:
                    continue
                invoice = self.bill_aconto_on_activation(session, contract.metering_point_id, supply.start_date, today=today)
                if invoice is not None:
                    created.append(invoice)
            summary["count"] = len(created)
        return created

    def _uninvoiced_runs(self, session: Session) -> list[uuid.UUID]:
        runs = session.scalars(
            select(SettlementRun)
            .where(SettlementRun.status == SettlementStatus.COMPLETED)
            .order_by(SettlementRun.metering_point_id, SettlementRun.version)
        )
        latest: dict[tuple[str, uuid.UUID, str], SettlementRun] = {}
        for run in runs:
            latest[(run.metering_point_id, run.billing_period_id, run.grid_area)] = run

        pending = []
        for run in latest.values():
            invoiced = session.scalar(
                select(func.count())
                .select_from(Invoice)
                .where(
                    Invoice.metering_point_id == run.metering_point_id,
                    Invoice.period_start == run.billing_period.period_start,
                    Invoice.period_end == run.billing_period.period_end,
                    Invoice.invoice_type == InvoiceType.SETTLEMENT,
                    Invoice.status != InvoiceStatus.CANCELLED,
                )
            )
            if not invoiced:
                pending.append(run.id)
        return pending

    @staticmethod
    def _prepayment_line(period: Period, amount_incl_vat: Decimal, vat_rate: Decimal) -> InvoiceLine:
        return InvoiceLine(
            line_type=InvoiceLineType.ACONTO_PREPAYMENT,
            description=f"Aconto {period.start.isoformat()} to {period.end.isoformat()}",
            period_start=period.start,
            period_end=period.end,
            quantity_kwh=None,
            amount_ex_vat=ex_vat(amount_incl_vat, vat_rate),
            amount_incl_vat=amount_incl_vat,
        )

    def _create_invoice(
        self,
        session: Session,
        contract: Contract,
        invoice_type: InvoiceType,
        period: Period,
        lines: Sequence[InvoiceLine],
        *,
        settlement_run_id: uuid.UUID | None = None,
    ) -> Invoice:
        subtotal = round_money(sum((line.amount_ex_vat for line in lines), ZERO))
        total = round_money(sum((line.amount_incl_vat for line in lines), ZERO))
        contract_id = contract.id
        payment_model = contract.payment_model
        invoice = Invoice(
            contract_id=contract_id,
            metering_point_id=contract.metering_point_id,
            invoice_type=invoice_type,
            status=InvoiceStatus.DRAFT,
            period_start=period.start,
            period_end=period.end,
            settlement_run_id=settlement_run_id,
            subtotal_ex_vat=subtotal,
            vat_amount=total - subtotal,
            total_incl_vat=total,
            lines=list(lines),
        )
        session.add(invoice)
        with tracer.start_as_current_span("invoice.create") as span:
            span.set_attribute("invoice_type", invoice_type.value)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent run billed the same contract period
                session.rollback()
                existing = self.find_invoice(session, contract_id, period, invoice_type)
                if existing is None:
                    raise
                return existing
        session.refresh(invoice)

        observe_invoice_created(invoice_type.value, payment_model.value)
        logger.info(
            "invoice.created",
            extra={
                "invoice_id": str(invoice.id),
                "metering_point_id": invoice.metering_point_id,
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
                "status": invoice_type.value,
            },
        )
        events.publish(
            "invoice.created",
            invoice_id=str(invoice.id),
            invoice_type=invoice_type.value,
            metering_point_id=invoice.metering_point_id,
            total_incl_vat=str(invoice.total_incl_vat),
        )
        return invoice

    def _set_status(
        self,
        session: Session,
        invoice_id: uuid.UUID,
        *,
        expected: tuple[InvoiceStatus, ...],
        target: InvoiceStatus,
    ) -> Invoice:
        result = session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status.in_(list(expected)))
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            actual = session.scalar(select(Invoice.status).where(Invoice.id == invoice_id))
            if actual is None:
                raise NotFoundError("invoice", invoice_id)
            observe_concurrency_conflict("invoice")
            raise ConcurrencyConflict("invoice", invoice_id, "|".join(s.value for s in expected), str(actual))
        session.commit()
        invoice = session.get(Invoice, invoice_id)
        session.refresh(invoice)
        logger.info("invoice.status_changed", extra={"invoice_id": str(invoice_id), "to_status": target.value})
        return invoice


invoicing_service = InvoicingService()
