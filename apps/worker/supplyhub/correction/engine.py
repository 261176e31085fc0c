from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from supplyhub.core.clock import local_zone
from supplyhub.core.config import get_settings
from supplyhub.settlement.formula import (
    CONSUMPTION_CHARGES,
    ZERO,
    ChargeType,
    MeteredQuantity,
    TariffSchedule,
    TaxAllowance,
    accumulate,
    round_money,
)


@dataclass(frozen=True, slots=True)
class CorrectionLineResult:
    charge_type: ChargeType
    delta_kwh: Decimal
    delta_amount: Decimal


@dataclass(frozen=True, slots=True)
class CorrectionResult:
    metering_point_id: str
    lines: tuple[CorrectionLineResult, ...]
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal

    @property
    def is_zero(self) -> bool:
        return all(line.delta_amount == ZERO and line.delta_kwh == ZERO for line in self.lines)

    def line(self, charge_type: ChargeType) -> CorrectionLineResult:
        for line in self.lines:
            if line.charge_type == charge_type:
                return line
        raise KeyError(charge_type)


@dataclass(slots=True)
class CorrectionEngine:
    """Signed deltas (revised minus original) priced with the settlement formula."""

    vat_rate: Decimal | None = None
    timezone: str | None = None

    def calculate(
        self,
        metering_point_id: str,
        original: Sequence[MeteredQuantity],
        revised: Sequence[MeteredQuantity],
        spot_prices: Mapping[datetime, Decimal],
        schedule: TariffSchedule,
        *,
        production: Mapping[datetime, Decimal] | None = None,
        allowance: TaxAllowance | None = None,
    ) -> CorrectionResult:
        zone = local_zone(self.timezone)
        vat_rate = self.vat_rate if self.vat_rate is not None else get_settings().vat_rate
        before = accumulate(metering_point_id, original, spot_prices, schedule, zone, production=production, allowance=allowance)
        after = accumulate(metering_point_id, revised, spot_prices, schedule, zone, production=production, allowance=allowance)
        before_amounts = before.rounded()
        after_amounts = after.rounded()

        delta_kwh = after.kwh - before.kwh
        lines = [
            CorrectionLineResult(
                charge_type=charge_type,
                delta_kwh=delta_kwh,
                delta_amount=after_amounts[charge_type] - before_amounts[charge_type],
            )
            for charge_type in CONSUMPTION_CHARGES
        ]
        credit_delta = after.rounded_credit() - before.rounded_credit()
        if credit_delta:
            lines.append(CorrectionLineResult(charge_type=ChargeType.PRODUCTION_CREDIT, delta_kwh=ZERO, delta_amount=credit_delta))
        subtotal = round_money(sum((line.delta_amount for line in lines), ZERO))
        vat_amount = round_money(subtotal * vat_rate)
        return CorrectionResult(
            metering_point_id=metering_point_id,
            lines=tuple(lines),
            subtotal=subtotal,
            vat_amount=vat_amount,
            total=subtotal + vat_amount,
        )


correction_engine = CorrectionEngine()
