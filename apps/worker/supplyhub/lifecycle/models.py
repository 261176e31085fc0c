from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum
from supplyhub.lifecycle.state_machine import TERMINAL_STATUSES, ProcessStatus, ProcessType

_NON_TERMINAL_PREDICATE = "status NOT IN ({})".format(", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES)))


class ProcessRequest(Base):
    __tablename__ = "process_request"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    process_type: Mapped[ProcessType] = mapped_column(str_enum(ProcessType), nullable=False)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    status: Mapped[ProcessStatus] = mapped_column(str_enum(ProcessStatus), nullable=False, default=ProcessStatus.PENDING)
    effective_date: Mapped[date] = mapped_column(Date(), nullable=False)
    external_correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cancel_correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    events: Mapped[list[ProcessEvent]] = relationship(
        "supplyhub.lifecycle.models.ProcessEvent",
        back_populates="process",
        order_by="ProcessEvent.occurred_at",
    )

    __table_args__ = (
        Index(
            "uq_process_request_one_open_per_point",
            "metering_point_id",
            unique=True,
            sqlite_where=text(_NON_TERMINAL_PREDICATE),
            postgresql_where=text(_NON_TERMINAL_PREDICATE),
        ),
        Index("ix_process_request_status_effective", "status", "effective_date"),
        Index("ix_process_request_external_correlation", "external_correlation_id"),
        Index("ix_process_request_cancel_correlation", "cancel_correlation_id"),
    )


class ProcessEvent(Base):
    __tablename__ = "process_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    process_request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("process_request.id", ondelete="CASCADE"),
        nullable=False,
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(64), nullable=False)

    process: Mapped[ProcessRequest] = relationship("supplyhub.lifecycle.models.ProcessRequest", back_populates="events")

    __table_args__ = (Index("ix_process_event_process_occurred", "process_request_id", "occurred_at"),)
