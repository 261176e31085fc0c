from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum


class TariffType(enum.StrEnum):
    GRID = "grid"
    SYSTEM = "system"
    TRANSMISSION = "transmission"
    ELECTRICITY_TAX = "electricity_tax"


class SpotPrice(Base):
    __tablename__ = "spot_price"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    price_area: Mapped[str] = mapped_column(String(8), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution: Mapped[str] = mapped_column(String(8), nullable=False)
    price_per_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("price_area", "timestamp", name="uq_spot_price_area_timestamp"),)


class Tariff(Base):
    __tablename__ = "tariff"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tariff_type: Mapped[TariffType] = mapped_column(str_enum(TariffType), nullable=False)
    # null for national tariffs (system, transmission, electricity tax)
    grid_area: Mapped[str | None] = mapped_column(String(16), nullable=True)
    valid_from: Mapped[date] = mapped_column(Date(), nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date(), nullable=True)
    flat_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    source_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    rates: Mapped[list[TariffRate]] = relationship(
        "supplyhub.pricing.models.TariffRate",
        back_populates="tariff",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TariffRate.hour_number",
    )

    __table_args__ = (Index("ix_tariff_type_area_valid", "tariff_type", "grid_area", "valid_from"),)


class TariffRate(Base):
    __tablename__ = "tariff_rate"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tariff_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tariff.id", ondelete="CASCADE"),
        nullable=False,
    )
    # 1..24, local hour of day + 1
    hour_number: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    tariff: Mapped[Tariff] = relationship("supplyhub.pricing.models.Tariff", back_populates="rates")

    __table_args__ = (UniqueConstraint("tariff_id", "hour_number", name="uq_tariff_rate_hour"),)


class GridSubscription(Base):
    __tablename__ = "grid_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    grid_area: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_per_month: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    valid_from: Mapped[date] = mapped_column(Date(), nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_grid_subscription_area_valid", "grid_area", "valid_from"),)
