"""Read-only preconditions for state-changing operations.

Every check queries the store when it is called. Results must not be cached:
portfolio state changes concurrently with the workers that consult these rules.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supplyhub.core.clock import local_midnight_utc
from supplyhub.lifecycle.models import ProcessRequest
from supplyhub.lifecycle.state_machine import TERMINAL_STATUSES, ProcessStatus
from supplyhub.metering.models import MeteringSample
from supplyhub.portfolio.repository import ContractRepository, MeteringPointRepository, SupplyPeriodRepository
from supplyhub.settlement.models import BillingPeriod, SettlementRun, SettlementStatus


@dataclass(frozen=True, slots=True)
class RuleResult:
    valid: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> RuleResult:
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str) -> RuleResult:
        return cls(valid=False, reason=reason)


@dataclass(slots=True)
class MarketRules:
    metering_point_repository: MeteringPointRepository = MeteringPointRepository()
    supply_period_repository: SupplyPeriodRepository = SupplyPeriodRepository()
    contract_repository: ContractRepository = ContractRepository()

    def can_change_supplier(self, session: Session, metering_point_id: str) -> RuleResult:
        if self.supply_period_repository.get_active(session, metering_point_id) is not None:
            return RuleResult.fail(f"metering point {metering_point_id} already has an active supply period")
        if self._has_open_process(session, metering_point_id):
            return RuleResult.fail(f"metering point {metering_point_id} already has an active process")
        return RuleResult.ok()

    def can_receive_metering(self, session: Session, metering_point_id: str) -> RuleResult:
        consumer = self.metering_point_repository.find_by_production_point(session, metering_point_id)
        if consumer is not None and consumer.id != metering_point_id:
            # production series follow the supply of the point they are netted against
            return self.can_receive_metering(session, consumer.id)
        if self.supply_period_repository.get_active(session, metering_point_id) is None:
            return RuleResult.fail(f"metering point {metering_point_id} has no active supply period")
        point = self.metering_point_repository.get(session, metering_point_id)
        if point is None or point.activated_at is None:
            return RuleResult.fail(f"metering point {metering_point_id} is not activated")
        if point.deactivated_at is not None:
            return RuleResult.fail(f"metering point {metering_point_id} is deactivated")
        return RuleResult.ok()

    def can_run_settlement(self, session: Session, metering_point_id: str) -> RuleResult:
        if self.contract_repository.get_active(session, metering_point_id) is None:
            return RuleResult.fail(f"metering point {metering_point_id} has no active contract")

        settled_until = session.scalar(
            select(func.max(BillingPeriod.period_end))
            .join(SettlementRun, SettlementRun.billing_period_id == BillingPeriod.id)
            .where(
                SettlementRun.metering_point_id == metering_point_id,
                SettlementRun.status == SettlementStatus.COMPLETED,
            )
        )
        stmt = select(func.count()).select_from(MeteringSample).where(MeteringSample.metering_point_id == metering_point_id)
        if settled_until is not None:
            stmt = stmt.where(MeteringSample.timestamp >= local_midnight_utc(settled_until))
        if not session.scalar(stmt):
            return RuleResult.fail(f"metering point {metering_point_id} has no unsettled metering data")
        return RuleResult.ok()

    def can_offboard(self, session: Session, metering_point_id: str) -> RuleResult:
        if self.supply_period_repository.get_active(session, metering_point_id) is None:
            return RuleResult.fail(f"metering point {metering_point_id} has no active supply period")
        completed = session.scalar(
            select(func.count())
            .select_from(ProcessRequest)
            .where(
                ProcessRequest.metering_point_id == metering_point_id,
                ProcessRequest.status == ProcessStatus.COMPLETED,
            )
        )
        if not completed:
            return RuleResult.fail(f"metering point {metering_point_id} has no completed process")
        return RuleResult.ok()

    def can_bill_aconto(self, session: Session, metering_point_id: str) -> RuleResult:
        if self.supply_period_repository.get_active(session, metering_point_id) is None:
            return RuleResult.fail(f"metering point {metering_point_id} has no active supply period")
        if self.contract_repository.get_active(session, metering_point_id) is None:
            return RuleResult.fail(f"metering point {metering_point_id} has no active contract")
        return RuleResult.ok()

    @staticmethod
    def _has_open_process(session: Session, metering_point_id: str) -> bool:
        count = session.scalar(
            select(func.count())
            .select_from(ProcessRequest)
            .where(
                ProcessRequest.metering_point_id == metering_point_id,
                ProcessRequest.status.not_in(list(TERMINAL_STATUSES)),
            )
        )
        return bool(count)


market_rules = MarketRules()
