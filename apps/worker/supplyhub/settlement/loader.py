from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from supplyhub.core.clock import as_utc, local_midnight_utc, local_zone
from supplyhub.core.config import get_settings
from supplyhub.core.errors import DataIncompleteError
from supplyhub.metering.repository import MeteringRepository
from supplyhub.portfolio.models import Contract, MeteringPoint, Product
from supplyhub.pricing.repository import PricingRepository
from supplyhub.settlement.engine import PricePoint, SettlementRequest
from supplyhub.settlement.formula import ZERO, MeteredQuantity, SubscriptionSegment, TariffSchedule, TaxAllowance


@dataclass(frozen=True, slots=True)
class PricingInputs:
    spot_prices: list[PricePoint]
    schedule: TariffSchedule
    grid_subscription_segments: list[SubscriptionSegment]
    supplier_subscription_per_month: Decimal


def _uncovered_from(segments: list[SubscriptionSegment], start: date, end: date) -> date | None:
    """First day of [start, end) that no segment covers."""
    cursor = start
    for segment in segments:
        if segment.valid_from > cursor:
            return cursor
        if segment.valid_to is None:
            return None
        cursor = max(cursor, segment.valid_to)
        if cursor >= end:
            return None
    return cursor if cursor < end else None


class SettlementDataLoader:
    """Reads metering, prices and tariffs for one point over a date range."""

    def __init__(
        self,
        metering_repository: MeteringRepository | None = None,
        pricing_repository: PricingRepository | None = None,
    ) -> None:
        self.metering_repository = metering_repository or MeteringRepository()
        self.pricing_repository = pricing_repository or PricingRepository()

    def load_pricing(self, session: Session, point: MeteringPoint, product: Product, start: date, end: date) -> PricingInputs:
        zone = local_zone()
        schedule = self.pricing_repository.load_schedule(
            session,
            point.id,
            point.grid_area,
            start,
            end,
            margin=Decimal(product.margin_per_kwh),
            supplement=Decimal(product.supplement_per_kwh),
        )
        segments = self.pricing_repository.get_grid_subscription_segments(session, point.grid_area, start, end)
        gap = _uncovered_from(segments, start, end)
        if gap is not None:
            raise DataIncompleteError(point.id, [f"grid_subscription@{point.grid_area}@{gap.isoformat()}"])
        return PricingInputs(
            spot_prices=self.pricing_repository.get_spot_prices(
                session, point.price_area, local_midnight_utc(start, zone), local_midnight_utc(end, zone)
            ),
            schedule=schedule,
            grid_subscription_segments=segments,
            supplier_subscription_per_month=Decimal(product.subscription_per_month),
        )

    def load_consumption(self, session: Session, point: MeteringPoint, start: date, end: date) -> list[MeteredQuantity]:
        return self._load_series(session, point.id, start, end)

    def load_production(self, session: Session, point: MeteringPoint, start: date, end: date) -> list[MeteredQuantity] | None:
        """Samples of the linked production point, or None when the point has no production."""
        if not point.production_point_id:
            return None
        return self._load_series(session, point.production_point_id, start, end)

    def load_request(
        self,
        session: Session,
        contract: Contract,
        start: date,
        end: date,
        *,
        cumulative_kwh: Decimal = ZERO,
    ) -> SettlementRequest:
        """Build the settlement input; ``cumulative_kwh`` is the year's consumption settled before ``start``."""
        point = contract.metering_point
        pricing = self.load_pricing(session, point, contract.product, start, end)
        allowance = None
        if contract.electric_heating:
            allowance = TaxAllowance(reduced_rate=get_settings().electric_heating_tax_rate, cumulative_kwh=cumulative_kwh)
        return SettlementRequest(
            metering_point_id=point.id,
            period_start=start,
            period_end=end,
            consumption=self.load_consumption(session, point, start, end),
            spot_prices=pricing.spot_prices,
            schedule=pricing.schedule,
            grid_subscription_segments=pricing.grid_subscription_segments,
            supplier_subscription_per_month=pricing.supplier_subscription_per_month,
            production=self.load_production(session, point, start, end),
            tax_allowance=allowance,
        )

    def _load_series(self, session: Session, metering_point_id: str, start: date, end: date) -> list[MeteredQuantity]:
        zone = local_zone()
        samples = self.metering_repository.get_samples(
            session, metering_point_id, local_midnight_utc(start, zone), local_midnight_utc(end, zone)
        )
        return [
            MeteredQuantity(timestamp=as_utc(sample.timestamp), quantity=Decimal(sample.quantity), resolution=sample.resolution)
            for sample in samples
        ]


settlement_data_loader = SettlementDataLoader()
