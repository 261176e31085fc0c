from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum
from supplyhub.portfolio.models import BillingFrequency
from supplyhub.settlement.formula import ChargeType


class SettlementStatus(enum.StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BillingPeriod(Base):
    __tablename__ = "billing_period"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    frequency: Mapped[BillingFrequency] = mapped_column(str_enum(BillingFrequency), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("period_start", "period_end", "frequency", name="uq_billing_period_range_frequency"),
    )


class SettlementRun(Base):
    __tablename__ = "settlement_run"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    billing_period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("billing_period.id", ondelete="RESTRICT"),
        nullable=False,
    )
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    grid_area: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[SettlementStatus] = mapped_column(
        str_enum(SettlementStatus), nullable=False, default=SettlementStatus.RUNNING
    )
    total_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    billing_period: Mapped[BillingPeriod] = relationship("supplyhub.settlement.models.BillingPeriod")
    lines: Mapped[list[SettlementLine]] = relationship(
        "supplyhub.settlement.models.SettlementLine",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "metering_point_id",
            "billing_period_id",
            "grid_area",
            "version",
            name="uq_settlement_run_point_period_area_version",
        ),
        Index("ix_settlement_run_point_status", "metering_point_id", "status"),
    )


class SettlementLine(Base):
    __tablename__ = "settlement_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement_run.id", ondelete="CASCADE"),
        nullable=False,
    )
    charge_type: Mapped[ChargeType] = mapped_column(str_enum(ChargeType), nullable=False)
    total_kwh: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    run: Mapped[SettlementRun] = relationship("supplyhub.settlement.models.SettlementRun", back_populates="lines")

    __table_args__ = (UniqueConstraint("run_id", "charge_type", name="uq_settlement_line_run_charge"),)


class AggregationReconciliation(Base):
    """Outcome of comparing a hub grid-area aggregation with our own metering."""

    __tablename__ = "aggregation_reconciliation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    grid_area: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    own_total_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    hub_total_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    discrepancy_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    discrepancy_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    source_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_aggregation_reconciliation_area_start", "grid_area", "period_start"),)
