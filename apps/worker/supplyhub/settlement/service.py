from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from supplyhub import events
from supplyhub.core.clock import local_today
from supplyhub.core.errors import ConcurrencyConflict, DataIncompleteError
from supplyhub.jobs import job_run
from supplyhub.lifecycle.models import ProcessRequest
from supplyhub.lifecycle.service import ProcessService
from supplyhub.lifecycle.state_machine import ProcessStatus
from supplyhub.market_rules.validator import MarketRules
from supplyhub.portfolio.models import Contract
from supplyhub.portfolio.repository import ContractRepository, SupplyPeriodRepository
from supplyhub.settlement.completeness import MeteringCompletenessChecker
from supplyhub.settlement.engine import SettlementEngine
from supplyhub.settlement.formula import ZERO
from supplyhub.settlement.loader import SettlementDataLoader
from supplyhub.settlement.models import SettlementRun, SettlementStatus
from supplyhub.settlement.periods import Period, is_period_due, periods_between
from supplyhub.settlement.store import SettlementResultStore


logger = logging.getLogger("supplyhub.settlement")
tracer = trace.get_tracer("supplyhub.settlement")


@dataclass(slots=True)
class SettlementTickResult:
    settled: list[uuid.UUID] = field(default_factory=list)
    final_settled: list[uuid.UUID] = field(default_factory=list)
    skipped: int = 0
    failed: int = 0


@dataclass(slots=True)
class SettlementService:
    engine: SettlementEngine = field(default_factory=SettlementEngine)
    store: SettlementResultStore = field(default_factory=SettlementResultStore)
    loader: SettlementDataLoader = field(default_factory=SettlementDataLoader)
    completeness: MeteringCompletenessChecker = field(default_factory=MeteringCompletenessChecker)
    rules: MarketRules = field(default_factory=MarketRules)
    process_service: ProcessService = field(default_factory=ProcessService)
    supply_period_repository: SupplyPeriodRepository = SupplyPeriodRepository()
    contract_repository: ContractRepository = ContractRepository()

    def settle_period(self, session: Session, contract: Contract, period: Period) -> SettlementRun:
        """Calculate and store one period for the contract's metering point.

        Incomplete price or tariff data is stored as a failed run and re-raised.
        """
        point = contract.metering_point
        metering_point_id = point.id
        grid_area = point.grid_area
        billing_period = self.store.get_or_create_billing_period(session, period, contract.billing_frequency)

        with tracer.start_as_current_span("settlement.settle_period") as span:
            span.set_attribute("metering_point_id", metering_point_id)
            span.set_attribute("period_start", period.start.isoformat())
            span.set_attribute("period_end", period.end.isoformat())
            try:
                cumulative_kwh = ZERO
                if contract.electric_heating:
                    cumulative_kwh = self.store.annual_kwh_before(session, metering_point_id, period.start)
                request = self.loader.load_request(
                    session, contract, period.start, period.end, cumulative_kwh=cumulative_kwh
                )
                result = self.engine.calculate(request)
            except DataIncompleteError as exc:
                span.record_exception(exc)
                self.store.store_failure(session, metering_point_id, billing_period, grid_area, str(exc))
                logger.warning(
                    "settlement.failed",
                    extra={
                        "metering_point_id": metering_point_id,
                        "period_start": period.start.isoformat(),
                        "period_end": period.end.isoformat(),
                        "error": str(exc),
                    },
                )
                raise
            run = self.store.store(session, result, billing_period, grid_area)
            span.set_attribute("run_id", str(run.id))

        events.publish(
            "settlement.completed",
            run_id=str(run.id),
            metering_point_id=metering_point_id,
            period_start=period.start.isoformat(),
            period_end=period.end.isoformat(),
            version=run.version,
            total=str(run.total),
        )
        return run

    def due_periods(self, session: Session, contract: Contract, today: date) -> Iterator[Period]:
        """Billing periods of the contract's supply that have closed by ``today``, oldest first.

        The first period starts at the later of supply and contract start; the last is
        cut at the earlier of supply and contract end.
        """
        supplies = [
            supply
            for supply in self.supply_period_repository.list_for_point(session, contract.metering_point_id)
            if (contract.end_date is None or supply.start_date < contract.end_date)
            and (supply.end_date is None or supply.end_date > contract.start_date)
        ]
        if not supplies:
            return
        supply = supplies[-1]
        start = max(supply.start_date, contract.start_date)
        ends = [day for day in (supply.end_date, contract.end_date) if day is not None]
        hard_end = min(ends) if ends else None

        for period in periods_between(start, contract.billing_frequency, hard_end or today):
            if hard_end is not None and period.end > hard_end:
                period = Period(start=period.start, end=hard_end)
            if not is_period_due(period, today):
                return
            yield period

    def is_settled(self, session: Session, contract: Contract, period: Period) -> bool:
        billing_period = self.store.find_billing_period(session, period, contract.billing_frequency)
        if billing_period is None:
            return False
        return (
            self.store.latest_run(
                session,
                contract.metering_point_id,
                billing_period.id,
                contract.metering_point.grid_area,
                status=SettlementStatus.COMPLETED,
            )
            is not None
        )

    def run_settlement_tick(self, session: Session, today: date | None = None) -> SettlementTickResult:
        today = today or local_today()
        result = SettlementTickResult()
        with job_run("settlement", today=today.isoformat()) as summary:
            for contract in self.contract_repository.list_active(session):
                rule = self.rules.can_run_settlement(session, contract.metering_point_id)
                if not rule.valid:
                    result.skipped += 1
                    logger.debug(
                        "settlement.not_eligible",
                        extra={"metering_point_id": contract.metering_point_id, "error": rule.reason},
                    )
                    continue
                self._settle_due(session, contract, today, result)

            # a closed supply still owes its final periods until they are settled
            for contract in self.contract_repository.list_ended(session):
                self._settle_due(session, contract, today, result)

            offboarding = session.scalars(
                select(ProcessRequest.id).where(ProcessRequest.status == ProcessStatus.OFFBOARDING_STARTED)
            ).all()
            for process_id in offboarding:
                if self.finalize_offboarding(session, process_id, today, result):
                    result.final_settled.append(process_id)

            summary["count"] = len(result.settled)
            summary["outcome"] = f"{result.failed} failed, {result.skipped} skipped"
        return result

    def finalize_offboarding(
        self,
        session: Session,
        process_id: uuid.UUID,
        today: date | None = None,
        result: SettlementTickResult | None = None,
    ) -> bool:
        """Settle every remaining period up to the supply end, then mark the process final settled."""
        today = today or local_today()
        result = result or SettlementTickResult()
        process = self.process_service.get(session, process_id)
        metering_point_id = process.metering_point_id
        supplies = self.supply_period_repository.list_for_point(session, metering_point_id)
        contract = self.contract_repository.get_latest(session, metering_point_id)
        if not supplies or supplies[-1].end_date is None or contract is None:
            logger.warning(
                "settlement.final_not_ready",
                extra={"process_id": str(process_id), "metering_point_id": metering_point_id},
            )
            return False
        supply_end = supplies[-1].end_date
        if supply_end > today:
            return False

        if not self._settle_due(session, contract, today, result):
            return False
        self.process_service.mark_final_settled(session, process_id)
        logger.info(
            "settlement.final_settled",
            extra={
                "process_id": str(process_id),
                "metering_point_id": metering_point_id,
                "period_end": supply_end.isoformat(),
            },
        )
        return True

    def _settle_due(self, session: Session, contract: Contract, today: date, result: SettlementTickResult) -> bool:
        """Settle the contract's due periods in order; False when one had to stop the walk."""
        point = contract.metering_point
        for period in list(self.due_periods(session, contract, today)):
            if self.is_settled(session, contract, period):
                continue
            completeness = self.completeness.check(session, point.id, period.start, period.end, point.resolution)
            if not completeness.is_complete:
                logger.info(
                    "settlement.incomplete",
                    extra={
                        "metering_point_id": point.id,
                        "period_start": period.start.isoformat(),
                        "period_end": period.end.isoformat(),
                        "count": completeness.missing,
                    },
                )
                return False
            try:
                run = self.settle_period(session, contract, period)
            except DataIncompleteError:
                result.failed += 1
                return False
            except ConcurrencyConflict as exc:
                logger.warning("settlement.conflict", extra={"metering_point_id": point.id, "error": str(exc)})
                return False
            result.settled.append(run.id)
        return True


settlement_service = SettlementService()
