"""Per-sample pricing shared by settlement and correction.

Everything monetary goes through :func:`round_money`; callers accumulate unrounded
amounts per charge type and round once per line so that settlement totals and
correction deltas reconcile to the cent.
"""
from __future__ import annotations

import calendar
import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date, datetime, tzinfo
from decimal import ROUND_HALF_EVEN, Decimal

from supplyhub.core.clock import as_utc
from supplyhub.core.errors import DataIncompleteError

CENT = Decimal("0.01")
ZERO = Decimal("0")
# kWh per calendar year billed at the standard electricity tax rate for electrically heated homes
ELECTRIC_HEATING_THRESHOLD = Decimal("4000")


class ChargeType(enum.StrEnum):
    ENERGY = "energy"
    GRID_TARIFF = "grid_tariff"
    SYSTEM_TARIFF = "system_tariff"
    TRANSMISSION_TARIFF = "transmission_tariff"
    ELECTRICITY_TAX = "electricity_tax"
    GRID_SUBSCRIPTION = "grid_subscription"
    SUPPLIER_SUBSCRIPTION = "supplier_subscription"
    PRODUCTION_CREDIT = "production_credit"


CONSUMPTION_CHARGES: tuple[ChargeType, ...] = (
    ChargeType.ENERGY,
    ChargeType.GRID_TARIFF,
    ChargeType.SYSTEM_TARIFF,
    ChargeType.TRANSMISSION_TARIFF,
    ChargeType.ELECTRICITY_TAX,
)
SUBSCRIPTION_CHARGES: tuple[ChargeType, ...] = (
    ChargeType.GRID_SUBSCRIPTION,
    ChargeType.SUPPLIER_SUBSCRIPTION,
)


def round_money(value: Decimal | int) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True, slots=True)
class RateCard:
    grid_rates: Mapping[int, Decimal]
    system_rate: Decimal
    transmission_rate: Decimal
    electricity_tax_rate: Decimal
    margin: Decimal = ZERO
    supplement: Decimal = ZERO


@dataclass(frozen=True, slots=True)
class RateSegment:
    valid_from: date
    valid_to: date | None
    card: RateCard

    def covers(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or day < self.valid_to)


@dataclass(frozen=True, slots=True)
class TariffSchedule:
    segments: tuple[RateSegment, ...]

    @classmethod
    def constant(cls, card: RateCard) -> TariffSchedule:
        return cls(segments=(RateSegment(valid_from=date.min, valid_to=None, card=card),))

    def card_for(self, day: date) -> RateCard | None:
        for segment in self.segments:
            if segment.covers(day):
                return segment.card
        return None


@dataclass(frozen=True, slots=True)
class MeteredQuantity:
    timestamp: datetime
    quantity: Decimal
    resolution: str = "PT1H"


@dataclass(slots=True)
class TaxAllowance:
    """Electric heating: consumption above the annual threshold is taxed at ``reduced_rate``.

    ``cumulative_kwh`` is the consumption already billed in the calendar year before
    the first sample priced with this allowance; it advances as samples are taxed.
    """

    reduced_rate: Decimal
    cumulative_kwh: Decimal = ZERO
    threshold: Decimal = ELECTRIC_HEATING_THRESHOLD

    def tax(self, quantity: Decimal, standard_rate: Decimal) -> Decimal:
        below = min(max(self.threshold - self.cumulative_kwh, ZERO), quantity)
        self.cumulative_kwh += quantity
        return below * standard_rate + (quantity - below) * self.reduced_rate


def price_sample(
    quantity: Decimal,
    spot_price: Decimal,
    local_hour: int,
    card: RateCard,
    allowance: TaxAllowance | None = None,
) -> dict[ChargeType, Decimal]:
    """Unrounded charges for one metered quantity; grid rates are indexed by local hour + 1."""
    if allowance is None:
        tax = quantity * card.electricity_tax_rate
    else:
        tax = allowance.tax(quantity, card.electricity_tax_rate)
    return {
        ChargeType.ENERGY: quantity * (spot_price + card.margin + card.supplement),
        ChargeType.GRID_TARIFF: quantity * card.grid_rates[local_hour + 1],
        ChargeType.SYSTEM_TARIFF: quantity * card.system_rate,
        ChargeType.TRANSMISSION_TARIFF: quantity * card.transmission_rate,
        ChargeType.ELECTRICITY_TAX: tax,
    }


@dataclass(slots=True)
class ChargeTotals:
    kwh: Decimal = ZERO
    amounts: dict[ChargeType, Decimal] = field(default_factory=lambda: {charge: ZERO for charge in CONSUMPTION_CHARGES})
    # spot value of production exceeding consumption in the same interval
    production_credit: Decimal = ZERO

    def add(self, quantity: Decimal, charges: Mapping[ChargeType, Decimal]) -> None:
        self.kwh += quantity
        for charge_type, amount in charges.items():
            self.amounts[charge_type] += amount

    def rounded(self) -> dict[ChargeType, Decimal]:
        return {charge_type: round_money(amount) for charge_type, amount in self.amounts.items()}

    def rounded_credit(self) -> Decimal:
        return -round_money(self.production_credit)


def accumulate(
    metering_point_id: str,
    samples: Iterable[MeteredQuantity],
    spot_prices: Mapping[datetime, Decimal],
    schedule: TariffSchedule,
    zone: tzinfo,
    *,
    production: Mapping[datetime, Decimal] | None = None,
    allowance: TaxAllowance | None = None,
) -> ChargeTotals:
    """Sum unrounded charges per type over ``samples``.

    With ``production``, each interval is netted first: a positive net is priced as
    consumption and a negative net is credited at the spot price. ``kwh`` stays the
    gross consumption. Samples are taxed in time order so an ``allowance`` crosses
    its threshold at the right hour; the caller's allowance is not modified.

    Raises DataIncompleteError listing every sample that lacks a spot price or a
    tariff rate; nothing is zero-filled.
    """
    totals = ChargeTotals()
    allowance = replace(allowance) if allowance is not None else None
    missing: list[str] = []
    for sample in sorted(samples, key=lambda item: as_utc(item.timestamp)):
        timestamp = as_utc(sample.timestamp)
        local = timestamp.astimezone(zone)
        spot_price = spot_prices.get(timestamp)
        if spot_price is None:
            missing.append(f"spot_price@{timestamp.isoformat()}")
            continue
        card = schedule.card_for(local.date())
        if card is None:
            missing.append(f"tariffs@{local.date().isoformat()}")
            continue
        if local.hour + 1 not in card.grid_rates:
            missing.append(f"grid_rate_hour_{local.hour + 1}@{local.date().isoformat()}")
            continue
        quantity = Decimal(sample.quantity)
        billable = quantity
        if production is not None:
            billable = quantity - Decimal(production.get(timestamp, ZERO))
            if billable < ZERO:
                totals.production_credit += -billable * Decimal(spot_price)
                billable = ZERO
        totals.add(quantity, price_sample(billable, Decimal(spot_price), local.hour, card, allowance))

    if missing:
        raise DataIncompleteError(metering_point_id, list(dict.fromkeys(missing)))
    return totals


def prorate_subscription(monthly_amount: Decimal, start: date, end: date) -> Decimal:
    """Monthly amount scaled by the share of each calendar month inside [start, end)."""
    total = ZERO
    cursor = start
    while cursor < end:
        days_in_month = calendar.monthrange(cursor.year, cursor.month)[1]
        if cursor.month == 12:
            month_end = date(cursor.year + 1, 1, 1)
        else:
            month_end = date(cursor.year, cursor.month + 1, 1)
        segment_end = min(end, month_end)
        total += Decimal(monthly_amount) * Decimal((segment_end - cursor).days) / Decimal(days_in_month)
        cursor = segment_end
    return total


@dataclass(frozen=True, slots=True)
class SubscriptionSegment:
    valid_from: date
    valid_to: date | None
    amount_per_month: Decimal


def prorate_segments(segments: Iterable[SubscriptionSegment], start: date, end: date) -> Decimal:
    """Sum of each segment's monthly amount prorated over its overlap with [start, end)."""
    total = ZERO
    for segment in segments:
        segment_start = max(start, segment.valid_from)
        segment_end = end if segment.valid_to is None else min(end, segment.valid_to)
        if segment_start < segment_end:
            total += prorate_subscription(segment.amount_per_month, segment_start, segment_end)
    return total


@dataclass(frozen=True, slots=True)
class VatBreakdown:
    line_vat: dict[ChargeType, Decimal]
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal


def allocate_vat(amounts: Mapping[ChargeType, Decimal], vat_rate: Decimal) -> VatBreakdown:
    """VAT on the rounded subtotal, spread over lines so the line VATs add up to it exactly."""
    subtotal = round_money(sum(amounts.values(), ZERO))
    vat_amount = round_money(subtotal * vat_rate)
    line_vat = {charge_type: round_money(amount * vat_rate) for charge_type, amount in amounts.items()}

    residual = vat_amount - sum(line_vat.values(), ZERO)
    if residual and line_vat:
        # the residual cent goes to the largest line
        largest = max(amounts, key=lambda charge_type: abs(amounts[charge_type]))
        line_vat[largest] += residual

    return VatBreakdown(line_vat=line_vat, subtotal=subtotal, vat_amount=vat_amount, total=subtotal + vat_amount)
