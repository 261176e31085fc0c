from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from supplyhub.portfolio.models import BillingFrequency, PaymentModel


class MeteringPointCreate(BaseModel):
    id: str = Field(pattern=r"^\d{18}$")
    grid_area: str = Field(min_length=1, max_length=16)
    price_area: str = Field(min_length=1, max_length=8)
    resolution: str = Field(default="PT1H", pattern=r"^PT(1H|15M)$")
    production_point_id: str | None = Field(default=None, pattern=r"^\d{18}$")


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    margin_per_kwh: Decimal = Field(ge=Decimal("0"))
    supplement_per_kwh: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    subscription_per_month: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))


class ContractCreate(BaseModel):
    metering_point_id: str
    product_id: UUID
    payment_model: PaymentModel
    billing_frequency: BillingFrequency
    start_date: date
    electric_heating: bool = False


class ContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    metering_point_id: str
    product_id: UUID
    payment_model: PaymentModel
    billing_frequency: BillingFrequency
    start_date: date
    end_date: date | None
    electric_heating: bool
