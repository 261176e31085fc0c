from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum
from supplyhub.settlement.formula import ChargeType


class CorrectionTrigger(enum.StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class CorrectionBatch(Base):
    __tablename__ = "correction_batch"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    original_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement_run.id", ondelete="RESTRICT"),
        nullable=False,
    )
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    trigger_type: Mapped[CorrectionTrigger] = mapped_column(str_enum(CorrectionTrigger), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lines: Mapped[list[CorrectionLine]] = relationship(
        "supplyhub.correction.models.CorrectionLine",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_correction_batch_run_created", "original_run_id", "created_at"),)


class CorrectionLine(Base):
    __tablename__ = "correction_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("correction_batch.id", ondelete="CASCADE"),
        nullable=False,
    )
    charge_type: Mapped[ChargeType] = mapped_column(str_enum(ChargeType), nullable=False)
    delta_kwh: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    delta_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    batch: Mapped[CorrectionBatch] = relationship("supplyhub.correction.models.CorrectionBatch", back_populates="lines")

    __table_args__ = (UniqueConstraint("batch_id", "charge_type", name="uq_correction_line_batch_charge"),)
