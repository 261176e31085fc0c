from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from supplyhub.core.clock import as_utc, local_midnight_utc, local_zone
from supplyhub.core.config import get_settings
from supplyhub.core.errors import DataIncompleteError
from supplyhub.metering.models import MeteringSample
from supplyhub.portfolio.models import Contract
from supplyhub.pricing.repository import PricingRepository
from supplyhub.settlement.formula import ZERO, prorate_subscription, round_money
from supplyhub.settlement.periods import Period


logger = logging.getLogger("supplyhub.billing")

_DAYS_PER_MONTH = Decimal("365.25") / Decimal(12)
_PRICE_LOOKBACK_DAYS = 30


@dataclass(frozen=True, slots=True)
class AcontoEstimate:
    period: Period
    kwh: Decimal
    price_per_kwh: Decimal
    subscriptions: Decimal
    amount_ex_vat: Decimal
    amount_incl_vat: Decimal


class Estimator(Protocol):
    def estimate(self, session: Session, contract: Contract, period: Period) -> AcontoEstimate: ...


class AcontoEstimator:
    """Expected cost of a future period from consumption history and recent prices.

    History and price lookups fall back to the configured defaults when the point
    has nothing stored yet.
    """

    def __init__(self, pricing_repository: PricingRepository | None = None) -> None:
        self.pricing_repository = pricing_repository or PricingRepository()

    def estimate(self, session: Session, contract: Contract, period: Period) -> AcontoEstimate:
        settings = get_settings()
        months = prorate_subscription(Decimal(1), period.start, period.end)
        kwh = self.average_monthly_kwh(session, contract.metering_point_id, period.start) * months
        price = self.expected_price_per_kwh(session, contract, period.start)

        point = contract.metering_point
        grid_subscription = self.pricing_repository.get_grid_subscription(session, point.grid_area, period.start) or ZERO
        subscriptions = prorate_subscription(
            grid_subscription + Decimal(contract.product.subscription_per_month), period.start, period.end
        )
        amount_ex_vat = round_money(kwh * price + subscriptions)
        amount_incl_vat = round_money(amount_ex_vat * (1 + settings.vat_rate))
        return AcontoEstimate(
            period=period,
            kwh=kwh,
            price_per_kwh=price,
            subscriptions=round_money(subscriptions),
            amount_ex_vat=amount_ex_vat,
            amount_incl_vat=amount_incl_vat,
        )

    def average_monthly_kwh(self, session: Session, metering_point_id: str, before: date) -> Decimal:
        settings = get_settings()
        zone = local_zone()
        window_end = local_midnight_utc(before, zone)
        window_start = local_midnight_utc(before - timedelta(days=int(settings.aconto_history_months * 30.4375)), zone)
        total, first = session.execute(
            select(func.sum(MeteringSample.quantity), func.min(MeteringSample.timestamp)).where(
                MeteringSample.metering_point_id == metering_point_id,
                MeteringSample.timestamp >= window_start,
                MeteringSample.timestamp < window_end,
            )
        ).one()
        if total is None or first is None:
            return settings.aconto_default_annual_kwh / 12

        covered_days = Decimal((window_end - as_utc(first)).total_seconds()) / Decimal(86400)
        if covered_days < 1:
            return settings.aconto_default_annual_kwh / 12
        return Decimal(str(total)) / (covered_days / _DAYS_PER_MONTH)

    def expected_price_per_kwh(self, session: Session, contract: Contract, on: date) -> Decimal:
        settings = get_settings()
        point = contract.metering_point
        product = contract.product
        zone = local_zone()
        spot = self.pricing_repository.average_spot_price(
            session,
            point.price_area,
            local_midnight_utc(on - timedelta(days=_PRICE_LOOKBACK_DAYS), zone),
            local_midnight_utc(on, zone),
        )
        if spot is None:
            return settings.aconto_fallback_price_per_kwh

        try:
            schedule = self.pricing_repository.load_schedule(
                session,
                point.id,
                point.grid_area,
                on,
                on + timedelta(days=1),
                margin=Decimal(product.margin_per_kwh),
                supplement=Decimal(product.supplement_per_kwh),
            )
        except DataIncompleteError as exc:
            logger.info(
                "aconto.tariffs_missing",
                extra={"metering_point_id": point.id, "error": str(exc)},
            )
            return settings.aconto_fallback_price_per_kwh

        card = schedule.card_for(on)
        if card is None:
            return settings.aconto_fallback_price_per_kwh
        average_grid = sum(card.grid_rates.values(), ZERO) / len(card.grid_rates)
        return (
            spot
            + card.margin
            + card.supplement
            + average_grid
            + card.system_rate
            + card.transmission_rate
            + card.electricity_tax_rate
        )


aconto_estimator = AcontoEstimator()
