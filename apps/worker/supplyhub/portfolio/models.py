from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum


class PaymentModel(enum.StrEnum):
    DIRECT = "direct"
    ACONTO = "aconto"


class BillingFrequency(enum.StrEnum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class MeteringPoint(Base):
    __tablename__ = "metering_point"

    id: Mapped[str] = mapped_column(String(18), primary_key=True)
    grid_area: Mapped[str] = mapped_column(String(16), nullable=False)
    price_area: Mapped[str] = mapped_column(String(8), nullable=False)
    resolution: Mapped[str] = mapped_column(String(8), nullable=False, default="PT1H", server_default="PT1H")
    # linked production point (solar); its samples are netted against this point's consumption
    production_point_id: Mapped[str | None] = mapped_column(String(18), nullable=True)
    activated_at: Mapped[date | None] = mapped_column(Date(), nullable=True)
    deactivated_at: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    supply_periods: Mapped[list[SupplyPeriod]] = relationship(
        "supplyhub.portfolio.models.SupplyPeriod",
        back_populates="metering_point",
        order_by="SupplyPeriod.start_date",
    )


class SupplyPeriod(Base):
    __tablename__ = "supply_period"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metering_point_id: Mapped[str] = mapped_column(String(18), ForeignKey("metering_point.id"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date(), nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    end_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    metering_point: Mapped[MeteringPoint] = relationship(
        "supplyhub.portfolio.models.MeteringPoint", back_populates="supply_periods"
    )

    __table_args__ = (Index("ix_supply_period_point_start", "metering_point_id", "start_date"),)


class Product(Base):
    __tablename__ = "product"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    margin_per_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    supplement_per_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    subscription_per_month: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Contract(Base):
    __tablename__ = "contract"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metering_point_id: Mapped[str] = mapped_column(String(18), ForeignKey("metering_point.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("product.id"), nullable=False)
    payment_model: Mapped[PaymentModel] = mapped_column(str_enum(PaymentModel), nullable=False)
    billing_frequency: Mapped[BillingFrequency] = mapped_column(str_enum(BillingFrequency), nullable=False)
    electric_heating: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[date] = mapped_column(Date(), nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    product: Mapped[Product] = relationship("supplyhub.portfolio.models.Product")
    metering_point: Mapped[MeteringPoint] = relationship("supplyhub.portfolio.models.MeteringPoint")

    __table_args__ = (Index("ix_contract_point_start", "metering_point_id", "start_date"),)
