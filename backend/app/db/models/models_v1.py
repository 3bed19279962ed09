from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    JSON,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base, BigIntPK


# ---------- MASTER DATA ----------
class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32))
    email: Mapped[str | None] = mapped_column(String(255))
    city: Mapped[str | None] = mapped_column(String(128))
    address: Mapped[str | None] = mapped_column(String(255))
    category: Mapped[str | None] = mapped_column(String(64))

    # balance is written by the invoice/payment flows and by merge/undo;
    # the linked records stay the source of truth
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    opening_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_protected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


# ---------- LEDGER ----------
class PurchaseInvoice(Base):
    __tablename__ = "purchase_invoices"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    invoice_date: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    supplier: Mapped[Supplier] = relationship()

    __table_args__ = (CheckConstraint("total_amount >= 0", name="ck_purchase_invoice_total_nonneg"),)


class SupplierPayment(Base):
    __tablename__ = "supplier_payments"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(32), default="CASH", nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    supplier: Mapped[Supplier] = relationship()

    __table_args__ = (CheckConstraint("amount > 0", name="ck_supplier_payment_amount_pos"),)


# ---------- MERGES ----------
class SupplierMerge(Base):
    __tablename__ = "supplier_merges"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    source_supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    target_supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    merged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    undo_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    permanent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # opaque JSON blob of SupplierSnapshot
    source_snapshot: Mapped[str] = mapped_column(Text, nullable=False)
    moved_invoice_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    moved_payment_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)

    merged_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    merged_opening_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    requested_by: Mapped[str | None] = mapped_column(String(128))

    source: Mapped[Supplier] = relationship(foreign_keys=[source_supplier_id])
    target: Mapped[Supplier] = relationship(foreign_keys=[target_supplier_id])

    __table_args__ = (
        CheckConstraint("source_supplier_id <> target_supplier_id", name="ck_supplier_merge_distinct"),
        Index("ix_supplier_merges_pending", "is_permanent", "undo_deadline"),
    )

    @property
    def moved_record_ids(self) -> dict[str, list[int]]:
        # invoice and payment ids live in separate tables, so they stay keyed by kind
        return {
            "INVOICE": list(self.moved_invoice_ids or []),
            "PAYMENT": list(self.moved_payment_ids or []),
        }


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor: Mapped[str | None] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
