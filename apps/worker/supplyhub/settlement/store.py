from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from supplyhub.core.clock import utcnow
from supplyhub.core.errors import ConcurrencyConflict
from supplyhub.metrics import observe_concurrency_conflict, observe_settlement_run
from supplyhub.portfolio.models import BillingFrequency
from supplyhub.settlement.engine import SettlementResult
from supplyhub.settlement.models import BillingPeriod, SettlementLine, SettlementRun, SettlementStatus
from supplyhub.settlement.periods import Period


logger = logging.getLogger("supplyhub.settlement")


@dataclass(slots=True)
class SettlementResultStore:
    def get_or_create_billing_period(self, session: Session, period: Period, frequency: BillingFrequency) -> BillingPeriod:
        stmt = select(BillingPeriod).where(
            BillingPeriod.period_start == period.start,
            BillingPeriod.period_end == period.end,
            BillingPeriod.frequency == frequency,
        )
        existing = session.scalar(stmt)
        if existing is not None:
            return existing

        billing_period = BillingPeriod(period_start=period.start, period_end=period.end, frequency=frequency)
        session.add(billing_period)
        try:
            session.commit()
        except IntegrityError:
            # another worker created it first
            session.rollback()
            existing = session.scalar(stmt)
            if existing is None:
                raise
            return existing
        return billing_period

    def find_billing_period(self, session: Session, period: Period, frequency: BillingFrequency) -> BillingPeriod | None:
        return session.scalar(
            select(BillingPeriod).where(
                BillingPeriod.period_start == period.start,
                BillingPeriod.period_end == period.end,
                BillingPeriod.frequency == frequency,
            )
        )

    def latest_run(
        self,
        session: Session,
        metering_point_id: str,
        billing_period_id,
        grid_area: str,
        *,
        status: SettlementStatus | None = None,
    ) -> SettlementRun | None:
        stmt = (
            select(SettlementRun)
            .where(
                SettlementRun.metering_point_id == metering_point_id,
                SettlementRun.billing_period_id == billing_period_id,
                SettlementRun.grid_area == grid_area,
            )
            .options(selectinload(SettlementRun.lines))
            .order_by(SettlementRun.version.desc())
            .limit(1)
        )
        if status is not None:
            stmt = stmt.where(SettlementRun.status == status)
        return session.scalar(stmt)

    def annual_kwh_before(self, session: Session, metering_point_id: str, day: date) -> Decimal:
        """Consumption settled for the point in ``day``'s calendar year before ``day``.

        Only the latest completed version of each billing period counts.
        """
        runs = session.scalars(
            select(SettlementRun)
            .join(BillingPeriod, SettlementRun.billing_period_id == BillingPeriod.id)
            .where(
                SettlementRun.metering_point_id == metering_point_id,
                SettlementRun.status == SettlementStatus.COMPLETED,
                BillingPeriod.period_start >= date(day.year, 1, 1),
                BillingPeriod.period_end <= day,
            )
            .order_by(SettlementRun.version)
        )
        latest = {run.billing_period_id: Decimal(run.total_kwh or 0) for run in runs}
        return sum(latest.values(), Decimal("0"))

    def store(
        self,
        session: Session,
        result: SettlementResult,
        billing_period: BillingPeriod,
        grid_area: str,
    ) -> SettlementRun:
        """Persist a completed run for (point, period, grid area).

        Storing a result identical to the latest completed run is a no-op that returns
        that run; a differing result becomes the next version.
        """
        current = self.latest_run(
            session,
            result.metering_point_id,
            billing_period.id,
            grid_area,
            status=SettlementStatus.COMPLETED,
        )
        if current is not None and self._same_amounts(current, result):
            logger.info(
                "settlement.store_skipped",
                extra={"run_id": str(current.id), "metering_point_id": result.metering_point_id},
            )
            return current

        now = utcnow()
        run = SettlementRun(
            billing_period_id=billing_period.id,
            metering_point_id=result.metering_point_id,
            grid_area=grid_area,
            version=self._next_version(session, result.metering_point_id, billing_period.id, grid_area),
            status=SettlementStatus.COMPLETED,
            total_kwh=result.total_kwh,
            subtotal=result.subtotal,
            vat_amount=result.vat_amount,
            total=result.total,
            executed_at=now,
            completed_at=now,
            lines=[
                SettlementLine(
                    charge_type=line.charge_type,
                    total_kwh=line.total_kwh,
                    amount=line.amount,
                    vat_amount=line.vat_amount,
                )
                for line in result.lines
            ],
        )
        self._commit_run(session, run)
        observe_settlement_run(SettlementStatus.COMPLETED)
        logger.info(
            "settlement.stored",
            extra={
                "run_id": str(run.id),
                "metering_point_id": run.metering_point_id,
                "period_start": billing_period.period_start.isoformat(),
                "period_end": billing_period.period_end.isoformat(),
                "status": SettlementStatus.COMPLETED.value,
            },
        )
        return run

    def store_failure(
        self,
        session: Session,
        metering_point_id: str,
        billing_period: BillingPeriod,
        grid_area: str,
        error: str,
    ) -> SettlementRun:
        """Record a failed attempt; a repeat failure refreshes the latest failed run instead of adding a version."""
        current = self.latest_run(session, metering_point_id, billing_period.id, grid_area)
        if current is not None and current.status == SettlementStatus.FAILED:
            current.error_details = error[:2000]
            current.executed_at = utcnow()
            session.add(current)
            session.commit()
            session.refresh(current)
            logger.info(
                "settlement.failure_refreshed",
                extra={"run_id": str(current.id), "metering_point_id": metering_point_id, "error": current.error_details},
            )
            return current

        run = SettlementRun(
            billing_period_id=billing_period.id,
            metering_point_id=metering_point_id,
            grid_area=grid_area,
            version=self._next_version(session, metering_point_id, billing_period.id, grid_area),
            status=SettlementStatus.FAILED,
            error_details=error[:2000],
            executed_at=utcnow(),
        )
        self._commit_run(session, run)
        observe_settlement_run(SettlementStatus.FAILED)
        return run

    def _commit_run(self, session: Session, run: SettlementRun) -> None:
        session.add(run)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            observe_concurrency_conflict("settlement_run")
            raise ConcurrencyConflict(
                "settlement_run",
                f"{run.metering_point_id}/{run.billing_period_id}/{run.grid_area}",
                expected=f"version {run.version - 1}",
                actual=f"version {run.version} already stored",
            ) from exc
        session.refresh(run)

    @staticmethod
    def _next_version(session: Session, metering_point_id: str, billing_period_id, grid_area: str) -> int:
        current = session.scalar(
            select(func.max(SettlementRun.version)).where(
                SettlementRun.metering_point_id == metering_point_id,
                SettlementRun.billing_period_id == billing_period_id,
                SettlementRun.grid_area == grid_area,
            )
        )
        return (current or 0) + 1

    @staticmethod
    def _same_amounts(run: SettlementRun, result: SettlementResult) -> bool:
        stored = {line.charge_type: line.amount for line in run.lines}
        return stored == result.amounts() and run.total == result.total


settlement_store = SettlementResultStore()
