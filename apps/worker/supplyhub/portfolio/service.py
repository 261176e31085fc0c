from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supplyhub import events
from supplyhub.core.errors import ConflictError, NotFoundError, ValidationError
from supplyhub.portfolio.models import Contract, MeteringPoint, Product, SupplyPeriod
from supplyhub.portfolio.repository import (
    ContractRepository,
    MeteringPointRepository,
    SupplyPeriodRepository,
)
from supplyhub.portfolio.schemas import ContractCreate, MeteringPointCreate, ProductCreate


logger = logging.getLogger("supplyhub.portfolio")


@dataclass(slots=True)
class PortfolioService:
    metering_point_repository: MeteringPointRepository = MeteringPointRepository()
    supply_period_repository: SupplyPeriodRepository = SupplyPeriodRepository()
    contract_repository: ContractRepository = ContractRepository()

    def register_metering_point(self, session: Session, payload: MeteringPointCreate) -> MeteringPoint:
        point = MeteringPoint(**payload.model_dump())
        session.add(point)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"metering point {payload.id} already registered") from exc
        session.refresh(point)
        return point

    def create_product(self, session: Session, payload: ProductCreate) -> Product:
        product = Product(**payload.model_dump())
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    def create_contract(self, session: Session, payload: ContractCreate) -> Contract:
        if self.metering_point_repository.get(session, payload.metering_point_id) is None:
            raise NotFoundError("metering_point", payload.metering_point_id)
        if session.get(Product, payload.product_id) is None:
            raise NotFoundError("product", payload.product_id)
        if self.contract_repository.get_active(session, payload.metering_point_id) is not None:
            raise ConflictError(f"metering point {payload.metering_point_id} already has an active contract")

        contract = Contract(**payload.model_dump())
        session.add(contract)
        session.commit()
        session.refresh(contract)
        return contract

    def open_supply(self, session: Session, metering_point_id: str, start_date: date) -> SupplyPeriod:
        """Start supply on a metering point; flushes but leaves the commit to the caller."""
        point = self.metering_point_repository.get(session, metering_point_id)
        if point is None:
            raise NotFoundError("metering_point", metering_point_id)

        existing = self.supply_period_repository.get_active(session, metering_point_id)
        if existing is not None:
            if existing.start_date == start_date:
                return existing
            raise ConflictError(f"metering point {metering_point_id} already has active supply since {existing.start_date}")

        period = SupplyPeriod(metering_point_id=metering_point_id, start_date=start_date)
        session.add(period)
        if point.activated_at is None or point.deactivated_at is not None:
            point.activated_at = start_date
            point.deactivated_at = None
            session.add(point)
        session.flush()
        logger.info(
            "supply.opened",
            extra={"metering_point_id": metering_point_id, "period_start": start_date.isoformat()},
        )
        return period

    def close_supply(self, session: Session, metering_point_id: str, end_date: date, reason: str) -> SupplyPeriod:
        """End supply and the active contract; flushes but leaves the commit to the caller."""
        period = self.supply_period_repository.get_active(session, metering_point_id)
        if period is None:
            raise ConflictError(f"metering point {metering_point_id} has no active supply")
        if end_date < period.start_date:
            raise ValidationError("supply end date precedes its start date")

        period.end_date = end_date
        period.end_reason = reason
        session.add(period)

        contract = self.contract_repository.get_active(session, metering_point_id)
        if contract is not None:
            contract.end_date = end_date
            session.add(contract)
        session.flush()
        logger.info(
            "supply.closed",
            extra={"metering_point_id": metering_point_id, "period_end": end_date.isoformat(), "status": reason},
        )
        events.publish(
            "supply.closed",
            metering_point_id=metering_point_id,
            end_date=end_date.isoformat(),
            reason=reason,
        )
        return period


portfolio_service = PortfolioService()
