from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplyhub.core.clock import utcnow
from supplyhub.core.database import Base, str_enum


class InvoiceType(enum.StrEnum):
    ACONTO_PREPAYMENT = "aconto_prepayment"
    SETTLEMENT = "settlement"


class InvoiceStatus(enum.StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    CANCELLED = "cancelled"
    CREDITED = "credited"


class InvoiceLineType(enum.StrEnum):
    ENERGY = "energy"
    GRID_TARIFF = "grid_tariff"
    SYSTEM_TARIFF = "system_tariff"
    TRANSMISSION_TARIFF = "transmission_tariff"
    ELECTRICITY_TAX = "electricity_tax"
    GRID_SUBSCRIPTION = "grid_subscription"
    SUPPLIER_SUBSCRIPTION = "supplier_subscription"
    PRODUCTION_CREDIT = "production_credit"
    ACONTO_DEDUCTION = "aconto_deduction"
    ACONTO_PREPAYMENT = "aconto_prepayment"


class AcontoPayment(Base):
    __tablename__ = "aconto_payment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_aconto_payment_point_period", "metering_point_id", "period_start"),)


class Invoice(Base):
    __tablename__ = "invoice"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("contract.id"), nullable=False)
    metering_point_id: Mapped[str] = mapped_column(String(18), nullable=False)
    invoice_type: Mapped[InvoiceType] = mapped_column(str_enum(InvoiceType), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(str_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    settlement_run_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement_run.id", ondelete="RESTRICT"),
        nullable=True,
    )
    subtotal_ex_vat: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    total_incl_vat: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines: Mapped[list[InvoiceLine]] = relationship(
        "supplyhub.billing.models.InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_invoice_one_active_per_contract_period_type",
            "contract_id",
            "period_start",
            "period_end",
            "invoice_type",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_invoice_settlement_run", "settlement_run_id"),
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("invoice.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_type: Mapped[InvoiceLineType] = mapped_column(str_enum(InvoiceLineType), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    quantity_kwh: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    amount_ex_vat: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    amount_incl_vat: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    invoice: Mapped[Invoice] = relationship("supplyhub.billing.models.Invoice", back_populates="lines")
