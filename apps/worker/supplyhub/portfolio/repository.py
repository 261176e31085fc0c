from __future__ import annotations

from datetime import date

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from supplyhub.portfolio.models import Contract, MeteringPoint, SupplyPeriod


class MeteringPointRepository:
    def get(self, session: Session, metering_point_id: str) -> MeteringPoint | None:
        return session.get(MeteringPoint, metering_point_id)

    def find_by_production_point(self, session: Session, production_point_id: str) -> MeteringPoint | None:
        return session.scalar(select(MeteringPoint).where(MeteringPoint.production_point_id == production_point_id))

    def list_for_grid_area(self, session: Session, grid_area: str) -> list[MeteringPoint]:
        return list(
            session.scalars(select(MeteringPoint).where(MeteringPoint.grid_area == grid_area).order_by(MeteringPoint.id))
        )


class SupplyPeriodRepository:
    def get_active(self, session: Session, metering_point_id: str) -> SupplyPeriod | None:
        return session.scalar(
            select(SupplyPeriod)
            .where(SupplyPeriod.metering_point_id == metering_point_id, SupplyPeriod.end_date.is_(None))
            .order_by(SupplyPeriod.start_date.desc())
            .limit(1)
        )

    def list_for_point(self, session: Session, metering_point_id: str) -> list[SupplyPeriod]:
        return list(
            session.scalars(
                select(SupplyPeriod)
                .where(SupplyPeriod.metering_point_id == metering_point_id)
                .order_by(SupplyPeriod.start_date)
            )
        )

    def list_overlapping(self, session: Session, start: date, end: date) -> list[SupplyPeriod]:
        return list(
            session.scalars(
                select(SupplyPeriod)
                .where(
                    SupplyPeriod.start_date < end,
                    or_(SupplyPeriod.end_date.is_(None), SupplyPeriod.end_date > start),
                )
                .order_by(SupplyPeriod.metering_point_id, SupplyPeriod.start_date)
            )
        )


class ContractRepository:
    def get_active(self, session: Session, metering_point_id: str) -> Contract | None:
        return session.scalar(
            select(Contract)
            .where(Contract.metering_point_id == metering_point_id, Contract.end_date.is_(None))
            .order_by(Contract.start_date.desc())
            .limit(1)
        )

    def get_for_period(self, session: Session, metering_point_id: str, start: date, end: date) -> Contract | None:
        return session.scalar(
            select(Contract)
            .where(
                Contract.metering_point_id == metering_point_id,
                Contract.start_date < end,
                or_(Contract.end_date.is_(None), Contract.end_date > start),
            )
            .order_by(Contract.start_date.desc())
            .limit(1)
        )

    def get_latest(self, session: Session, metering_point_id: str) -> Contract | None:
        return session.scalar(
            select(Contract)
            .where(Contract.metering_point_id == metering_point_id)
            .order_by(Contract.start_date.desc(), Contract.created_at.desc())
            .limit(1)
        )

    def list_active(self, session: Session) -> list[Contract]:
        return list(
            session.scalars(select(Contract).where(Contract.end_date.is_(None)).order_by(Contract.metering_point_id))
        )

    def list_ended(self, session: Session) -> list[Contract]:
        return list(
            session.scalars(select(Contract).where(Contract.end_date.is_not(None)).order_by(Contract.metering_point_id))
        )


metering_point_repository = MeteringPointRepository()
supply_period_repository = SupplyPeriodRepository()
contract_repository = ContractRepository()
