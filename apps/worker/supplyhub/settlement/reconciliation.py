"""Grid-area reconciliation of the hub's aggregated consumption against our own metering.

The hub publishes, per grid area and period, the hourly consumption it has
allocated to us. Every hour where the two sides differ by more than the
tolerance is reported, including hours only one side knows about.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from supplyhub import events
from supplyhub.core.clock import as_utc, local_midnight_utc, local_zone
from supplyhub.core.config import get_settings
from supplyhub.metering.repository import MeteringRepository
from supplyhub.portfolio.repository import MeteringPointRepository
from supplyhub.settlement.formula import ZERO
from supplyhub.settlement.models import AggregationReconciliation


logger = logging.getLogger("supplyhub.settlement")


@dataclass(frozen=True, slots=True)
class Discrepancy:
    timestamp: datetime
    own_kwh: Decimal
    hub_kwh: Decimal

    @property
    def delta_kwh(self) -> Decimal:
        return self.own_kwh - self.hub_kwh


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    grid_area: str
    period_start: date
    period_end: date
    own_total_kwh: Decimal
    hub_total_kwh: Decimal
    discrepancies: tuple[Discrepancy, ...]

    @property
    def discrepancy_kwh(self) -> Decimal:
        return self.own_total_kwh - self.hub_total_kwh

    @property
    def is_reconciled(self) -> bool:
        return not self.discrepancies


def reconcile(
    grid_area: str,
    period_start: date,
    period_end: date,
    hub_total_kwh: Decimal,
    hub_hours: Mapping[datetime, Decimal],
    own_hours: Mapping[datetime, Decimal],
    tolerance: Decimal,
) -> ReconciliationResult:
    hub = {as_utc(timestamp): Decimal(quantity) for timestamp, quantity in hub_hours.items()}
    own = {as_utc(timestamp): Decimal(quantity) for timestamp, quantity in own_hours.items()}
    discrepancies = [
        Discrepancy(timestamp=timestamp, own_kwh=own.get(timestamp, ZERO), hub_kwh=hub.get(timestamp, ZERO))
        for timestamp in sorted(hub.keys() | own.keys())
        if abs(own.get(timestamp, ZERO) - hub.get(timestamp, ZERO)) > tolerance
    ]
    return ReconciliationResult(
        grid_area=grid_area,
        period_start=period_start,
        period_end=period_end,
        own_total_kwh=sum(own.values(), ZERO),
        hub_total_kwh=Decimal(hub_total_kwh),
        discrepancies=tuple(discrepancies),
    )


@dataclass(slots=True)
class ReconciliationService:
    metering_repository: MeteringRepository = MeteringRepository()
    metering_point_repository: MeteringPointRepository = MeteringPointRepository()
    tolerance_kwh: Decimal | None = None

    def own_hours(self, session: Session, grid_area: str, start: date, end: date) -> dict[datetime, Decimal]:
        zone = local_zone()
        points = self.metering_point_repository.list_for_grid_area(session, grid_area)
        return self.metering_repository.hourly_totals(
            session, [point.id for point in points], local_midnight_utc(start, zone), local_midnight_utc(end, zone)
        )

    def reconcile_aggregation(
        self,
        session: Session,
        grid_area: str,
        period_start: date,
        period_end: date,
        hub_total_kwh: Decimal,
        hub_hours: Mapping[datetime, Decimal],
        *,
        source_message_id: str | None = None,
    ) -> AggregationReconciliation:
        if source_message_id is not None:
            existing = session.scalar(
                select(AggregationReconciliation).where(
                    AggregationReconciliation.source_message_id == source_message_id
                )
            )
            if existing is not None:
                return existing

        tolerance = self.tolerance_kwh if self.tolerance_kwh is not None else get_settings().reconciliation_tolerance_kwh
        result = reconcile(
            grid_area,
            period_start,
            period_end,
            hub_total_kwh,
            hub_hours,
            self.own_hours(session, grid_area, period_start, period_end),
            tolerance,
        )
        record = AggregationReconciliation(
            grid_area=grid_area,
            period_start=period_start,
            period_end=period_end,
            own_total_kwh=result.own_total_kwh,
            hub_total_kwh=result.hub_total_kwh,
            discrepancy_kwh=result.discrepancy_kwh,
            discrepancy_hours=len(result.discrepancies),
            is_reconciled=result.is_reconciled,
            source_message_id=source_message_id,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

        extra = {
            "grid_area": grid_area,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "count": len(result.discrepancies),
            "outcome": str(result.discrepancy_kwh),
        }
        if result.is_reconciled:
            logger.info("reconciliation.matched", extra=extra)
        else:
            logger.warning("reconciliation.discrepancy", extra=extra)
        events.publish(
            "reconciliation.completed",
            grid_area=grid_area,
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
            is_reconciled=result.is_reconciled,
            discrepancy_kwh=str(result.discrepancy_kwh),
        )
        return record


reconciliation_service = ReconciliationService()
