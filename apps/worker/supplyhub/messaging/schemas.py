from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from supplyhub.messaging.gateway import QueueName
from supplyhub.pricing.models import TariffType


class MessageType(enum.StrEnum):
    PROCESS_ACKNOWLEDGEMENT = "process_acknowledgement"
    MARKET_OVERRIDE = "market_override"
    METERING_SERIES = "metering_series"
    SPOT_PRICES = "spot_prices"
    TARIFF_UPDATE = "tariff_update"
    AGGREGATION = "aggregation"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ProcessAcknowledgement(_Payload):
    correlation_id: str = Field(min_length=1)
    accepted: bool
    reason: str | None = None


class MarketOverride(_Payload):
    metering_point_id: str = Field(pattern=r"^\d{18}$")
    action: Literal["auto_cancel", "effectuated"]
    reason: str | None = None
    correlation_id: str | None = None


class MeteringObservation(_Payload):
    timestamp: datetime
    quantity: Decimal = Field(ge=Decimal("0"))
    quality: str = "measured"


class MeteringSeries(_Payload):
    metering_point_id: str = Field(pattern=r"^\d{18}$")
    resolution: Literal["PT1H", "PT15M"] = "PT1H"
    observations: list[MeteringObservation] = Field(min_length=1)


class SpotPriceObservation(_Payload):
    timestamp: datetime
    price_per_kwh: Decimal


class SpotPrices(_Payload):
    price_area: str = Field(min_length=1, max_length=8)
    resolution: Literal["PT1H", "PT15M"] = "PT1H"
    prices: list[SpotPriceObservation] = Field(min_length=1)


class TariffUpdate(_Payload):
    tariff_type: TariffType
    grid_area: str | None = None
    valid_from: date
    valid_to: date | None = None
    flat_rate: Decimal | None = None
    hourly_rates: list[Decimal] | None = None

    @model_validator(mode="after")
    def _check_rates(self) -> TariffUpdate:
        if self.flat_rate is None and not self.hourly_rates:
            raise ValueError("either flat_rate or hourly_rates is required")
        if self.hourly_rates is not None and len(self.hourly_rates) != 24:
            raise ValueError("hourly_rates must hold 24 values")
        if self.valid_to is not None and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        if self.tariff_type is TariffType.GRID and self.grid_area is None:
            raise ValueError("grid tariffs need a grid_area")
        return self


class AggregationPoint(_Payload):
    timestamp: datetime
    quantity: Decimal = Field(ge=Decimal("0"))


class Aggregation(_Payload):
    grid_area: str = Field(min_length=1, max_length=8)
    period_start: date
    period_end: date
    total_kwh: Decimal = Field(ge=Decimal("0"))
    points: list[AggregationPoint] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_period(self) -> Aggregation:
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


PAYLOAD_SCHEMAS: dict[MessageType, type[_Payload]] = {
    MessageType.PROCESS_ACKNOWLEDGEMENT: ProcessAcknowledgement,
    MessageType.MARKET_OVERRIDE: MarketOverride,
    MessageType.METERING_SERIES: MeteringSeries,
    MessageType.SPOT_PRICES: SpotPrices,
    MessageType.TARIFF_UPDATE: TariffUpdate,
    MessageType.AGGREGATION: Aggregation,
}

MESSAGE_QUEUES: dict[MessageType, QueueName] = {
    MessageType.PROCESS_ACKNOWLEDGEMENT: QueueName.PROCESSES,
    MessageType.MARKET_OVERRIDE: QueueName.PROCESSES,
    MessageType.METERING_SERIES: QueueName.METERING,
    MessageType.SPOT_PRICES: QueueName.PRICES,
    MessageType.TARIFF_UPDATE: QueueName.PRICES,
    MessageType.AGGREGATION: QueueName.AGGREGATIONS,
}
