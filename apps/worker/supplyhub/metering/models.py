from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base


class MeteringSample(Base):
    __tablename__ = "metering_sample"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolution: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    quality_code: Mapped[str] = mapped_column(String(8), nullable=False)
    source_message_id: Mapped[str] = mapped_column(String(128), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("metering_point_id", "timestamp", name="uq_metering_sample_point_timestamp"),
    )


class MeteringRevision(Base):
    __tablename__ = "metering_revision"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    previous_source: Mapped[str] = mapped_column(String(128), nullable=False)
    new_source: Mapped[str] = mapped_column(String(128), nullable=False)
    revised_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_metering_revision_point_timestamp", "metering_point_id", "timestamp"),
        Index("ix_metering_revision_point_revised", "metering_point_id", "revised_at"),
    )
