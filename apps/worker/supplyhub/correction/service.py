from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from opentelemetry import trace
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supplyhub import events
from supplyhub.core.clock import as_utc, local_midnight_utc, local_zone
from supplyhub.core.config import get_settings
from supplyhub.core.errors import ConflictError, NotFoundError, ValidationError
from supplyhub.correction.engine import CorrectionEngine
from supplyhub.correction.models import CorrectionBatch, CorrectionLine, CorrectionTrigger
from supplyhub.jobs import job_run
from supplyhub.metering.repository import MeteringRepository
from supplyhub.metrics import observe_correction_batch
from supplyhub.portfolio.models import MeteringPoint
from supplyhub.portfolio.repository import ContractRepository
from supplyhub.settlement.engine import hourly_spot_prices
from supplyhub.settlement.formula import MeteredQuantity, TaxAllowance
from supplyhub.settlement.loader import SettlementDataLoader
from supplyhub.settlement.models import SettlementRun, SettlementStatus
from supplyhub.settlement.store import SettlementResultStore


logger = logging.getLogger("supplyhub.correction")
tracer = trace.get_tracer("supplyhub.correction")


@dataclass(slots=True)
class CorrectionService:
    engine: CorrectionEngine = field(default_factory=CorrectionEngine)
    loader: SettlementDataLoader = field(default_factory=SettlementDataLoader)
    store: SettlementResultStore = field(default_factory=SettlementResultStore)
    metering_repository: MeteringRepository = MeteringRepository()
    contract_repository: ContractRepository = ContractRepository()

    def trigger_correction(
        self,
        session: Session,
        run_id: uuid.UUID,
        trigger_type: CorrectionTrigger | str = CorrectionTrigger.MANUAL,
        start: date | None = None,
        end: date | None = None,
        *,
        note: str | None = None,
    ) -> CorrectionBatch:
        """Price the metering revisions recorded since ``run_id`` was settled (or last corrected).

        The original quantity of a revised sample is the previous quantity of its
        earliest revision in that window; the revised quantity is what is stored now.
        """
        trigger_type = CorrectionTrigger(trigger_type)
        run = session.get(SettlementRun, run_id)
        if run is None:
            raise NotFoundError("settlement_run", run_id)
        if run.status != SettlementStatus.COMPLETED:
            raise ConflictError(f"settlement run {run_id} is {run.status.value}, only completed runs can be corrected")

        period = run.billing_period
        start = start or period.period_start
        end = end or period.period_end
        if not (period.period_start <= start < end <= period.period_end):
            raise ValidationError(
                f"correction range {start}..{end} is outside the settled period "
                f"{period.period_start}..{period.period_end}"
            )

        point = session.get(MeteringPoint, run.metering_point_id)
        if point is None:
            raise NotFoundError("metering_point", run.metering_point_id)
        zone = local_zone()
        range_start = local_midnight_utc(start, zone)
        range_end = local_midnight_utc(end, zone)
        cutoff = self.correction_cutoff(session, run)

        revisions = self.metering_repository.get_revisions(
            session, point.id, range_start, range_end, revised_after=cutoff
        )
        if not revisions:
            raise ValidationError(f"no metering revisions for {point.id} since {cutoff.isoformat()}")

        original_quantity: dict[datetime, MeteredQuantity] = {}
        for revision in revisions:
            timestamp = as_utc(revision.timestamp)
            original_quantity.setdefault(
                timestamp, MeteredQuantity(timestamp=timestamp, quantity=revision.previous_quantity, resolution=point.resolution)
            )
        current = {
            as_utc(sample.timestamp): sample
            for sample in self.metering_repository.get_samples(session, point.id, range_start, range_end)
        }
        revised = [
            MeteredQuantity(timestamp=timestamp, quantity=current[timestamp].quantity, resolution=current[timestamp].resolution)
            for timestamp in original_quantity
            if timestamp in current
        ]

        contract = self.contract_repository.get_for_period(session, point.id, start, end)
        if contract is None:
            raise NotFoundError("contract", f"{point.id}@{start.isoformat()}")

        with tracer.start_as_current_span("correction.calculate") as span:
            span.set_attribute("run_id", str(run_id))
            span.set_attribute("count", len(revised))
            pricing = self.loader.load_pricing(session, point, contract.product, start, end)
            production = self.loader.load_production(session, point, start, end)
            allowance = None
            if contract.electric_heating:
                allowance = TaxAllowance(
                    reduced_rate=get_settings().electric_heating_tax_rate,
                    cumulative_kwh=self.store.annual_kwh_before(session, point.id, period.period_start),
                )
            result = self.engine.calculate(
                point.id,
                list(original_quantity.values()),
                revised,
                hourly_spot_prices(pricing.spot_prices, point.resolution),
                pricing.schedule,
                production=None if production is None else {sample.timestamp: sample.quantity for sample in production},
                allowance=allowance,
            )

        batch = CorrectionBatch(
            original_run_id=run.id,
            metering_point_id=point.id,
            period_start=start,
            period_end=end,
            trigger_type=trigger_type,
            subtotal=result.subtotal,
            vat_amount=result.vat_amount,
            total=result.total,
            note=note,
            lines=[
                CorrectionLine(charge_type=line.charge_type, delta_kwh=line.delta_kwh, delta_amount=line.delta_amount)
                for line in result.lines
            ],
        )
        session.add(batch)
        session.commit()
        session.refresh(batch)

        observe_correction_batch(trigger_type.value)
        logger.info(
            "correction.created",
            extra={
                "batch_id": str(batch.id),
                "run_id": str(run.id),
                "metering_point_id": point.id,
                "count": len(revised),
                "outcome": str(result.total),
            },
        )
        events.publish(
            "correction.created",
            batch_id=str(batch.id),
            run_id=str(run.id),
            metering_point_id=point.id,
            total=str(result.total),
        )
        return batch

    def correction_cutoff(self, session: Session, run: SettlementRun) -> datetime:
        """Revisions after this instant are not yet reflected in the run or its corrections."""
        last_batch = session.scalar(
            select(func.max(CorrectionBatch.created_at)).where(CorrectionBatch.original_run_id == run.id)
        )
        completed_at = as_utc(run.completed_at or run.executed_at)
        if last_batch is None:
            return completed_at
        return max(completed_at, as_utc(last_batch))

    def list_batches(self, session: Session, run_id: uuid.UUID) -> list[CorrectionBatch]:
        return list(
            session.scalars(
                select(CorrectionBatch)
                .where(CorrectionBatch.original_run_id == run_id)
                .order_by(CorrectionBatch.created_at)
            )
        )

    def run_correction_detection(self, session: Session) -> list[CorrectionBatch]:
        """Open an automatic correction for each latest completed run with unreflected revisions."""
        batches: list[CorrectionBatch] = []
        with job_run("correction_detection") as summary:
            for run in self._latest_completed_runs(session):
                period = run.billing_period
                zone = local_zone()
                revised_at = self.metering_repository.latest_revision_at(
                    session,
                    run.metering_point_id,
                    local_midnight_utc(period.period_start, zone),
                    local_midnight_utc(period.period_end, zone),
                )
                if revised_at is None or revised_at <= self.correction_cutoff(session, run):
                    continue
                batches.append(self.trigger_correction(session, run.id, CorrectionTrigger.AUTO))
            summary["count"] = len(batches)
        return batches

    @staticmethod
    def _latest_completed_runs(session: Session) -> list[SettlementRun]:
        latest: dict[tuple[str, uuid.UUID, str], SettlementRun] = {}
        runs = session.scalars(
            select(SettlementRun)
            .where(SettlementRun.status == SettlementStatus.COMPLETED)
            .order_by(SettlementRun.metering_point_id, SettlementRun.version)
        )
        for run in runs:
            latest[(run.metering_point_id, run.billing_period_id, run.grid_area)] = run
        return list(latest.values())


correction_service = CorrectionService()
