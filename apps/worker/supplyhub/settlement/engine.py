from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from supplyhub.core.clock import as_utc, local_zone
from supplyhub.core.config import get_settings
from supplyhub.core.errors import DataIncompleteError, ValidationError
from supplyhub.settlement.formula import (
    CONSUMPTION_CHARGES,
    ZERO,
    ChargeType,
    MeteredQuantity,
    SubscriptionSegment,
    TariffSchedule,
    TaxAllowance,
    accumulate,
    allocate_vat,
    prorate_segments,
    prorate_subscription,
    round_money,
)


@dataclass(frozen=True, slots=True)
class PricePoint:
    timestamp: datetime
    price_per_kwh: Decimal
    resolution: str = "PT1H"


@dataclass(frozen=True, slots=True)
class SettlementRequest:
    metering_point_id: str
    period_start: date
    period_end: date
    consumption: Sequence[MeteredQuantity]
    spot_prices: Sequence[PricePoint]
    schedule: TariffSchedule
    grid_subscription_per_month: Decimal = ZERO
    supplier_subscription_per_month: Decimal = ZERO
    # when present, replaces grid_subscription_per_month with the amounts in force per day
    grid_subscription_segments: Sequence[SubscriptionSegment] = ()
    production: Sequence[MeteredQuantity] | None = None
    tax_allowance: TaxAllowance | None = None


@dataclass(frozen=True, slots=True)
class SettlementLineResult:
    charge_type: ChargeType
    total_kwh: Decimal | None
    amount: Decimal
    vat_amount: Decimal


@dataclass(frozen=True, slots=True)
class SettlementResult:
    metering_point_id: str
    period_start: date
    period_end: date
    total_kwh: Decimal
    lines: tuple[SettlementLineResult, ...]
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal

    def line(self, charge_type: ChargeType) -> SettlementLineResult:
        for line in self.lines:
            if line.charge_type == charge_type:
                return line
        raise KeyError(charge_type)

    def amounts(self) -> dict[ChargeType, Decimal]:
        return {line.charge_type: line.amount for line in self.lines}


def hourly_spot_prices(prices: Sequence[PricePoint], consumption_resolution: str) -> dict[datetime, Decimal]:
    """Map UTC timestamps to prices, averaging quarter-hour prices when consumption is hourly."""
    by_timestamp = {as_utc(point.timestamp): Decimal(point.price_per_kwh) for point in prices}
    has_quarter_hours = any(point.resolution == "PT15M" for point in prices)
    if consumption_resolution != "PT1H" or not has_quarter_hours:
        return by_timestamp

    buckets: dict[datetime, list[Decimal]] = defaultdict(list)
    for timestamp, price in by_timestamp.items():
        buckets[timestamp.replace(minute=0, second=0, microsecond=0)].append(price)
    return {hour: sum(values, ZERO) / len(values) for hour, values in buckets.items()}


@dataclass(slots=True)
class SettlementEngine:
    vat_rate: Decimal | None = None
    timezone: str | None = None

    def calculate(self, request: SettlementRequest) -> SettlementResult:
        if request.period_end <= request.period_start:
            raise ValidationError("settlement period end must be after its start")
        if not request.consumption:
            raise DataIncompleteError(request.metering_point_id, ["consumption"])

        zone = local_zone(self.timezone)
        vat_rate = self.vat_rate if self.vat_rate is not None else get_settings().vat_rate
        prices = hourly_spot_prices(request.spot_prices, request.consumption[0].resolution)
        production = None
        if request.production is not None:
            production = {as_utc(sample.timestamp): Decimal(sample.quantity) for sample in request.production}
        totals = accumulate(
            request.metering_point_id,
            request.consumption,
            prices,
            request.schedule,
            zone,
            production=production,
            allowance=request.tax_allowance,
        )

        amounts: dict[ChargeType, Decimal] = totals.rounded()
        if request.grid_subscription_segments:
            grid_subscription = prorate_segments(request.grid_subscription_segments, request.period_start, request.period_end)
        else:
            grid_subscription = prorate_subscription(request.grid_subscription_per_month, request.period_start, request.period_end)
        amounts[ChargeType.GRID_SUBSCRIPTION] = round_money(grid_subscription)
        amounts[ChargeType.SUPPLIER_SUBSCRIPTION] = round_money(
            prorate_subscription(request.supplier_subscription_per_month, request.period_start, request.period_end)
        )
        if totals.production_credit > ZERO:
            amounts[ChargeType.PRODUCTION_CREDIT] = totals.rounded_credit()
        vat = allocate_vat(amounts, vat_rate)

        lines = tuple(
            SettlementLineResult(
                charge_type=charge_type,
                total_kwh=totals.kwh if charge_type in CONSUMPTION_CHARGES else None,
                amount=amount,
                vat_amount=vat.line_vat[charge_type],
            )
            for charge_type, amount in amounts.items()
        )
        return SettlementResult(
            metering_point_id=request.metering_point_id,
            period_start=request.period_start,
            period_end=request.period_end,
            total_kwh=totals.kwh,
            lines=lines,
            subtotal=vat.subtotal,
            vat_amount=vat.vat_amount,
            total=vat.total,
        )


settlement_engine = SettlementEngine()
