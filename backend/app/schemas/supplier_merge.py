from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from backend.app.schemas.supplier import SupplierSnapshot


class SupplierMergeRead(BaseModel):
    id: int
    source_supplier_id: int
    target_supplier_id: int
    merged_at: datetime
    undo_deadline: datetime
    is_permanent: bool
    source_snapshot: SupplierSnapshot
    moved_invoice_ids: list[int]
    moved_payment_ids: list[int]
    merged_balance: Decimal
    merged_opening_balance: Decimal
    requested_by: str | None = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record) -> "SupplierMergeRead":
        return cls(
            id=record.id,
            source_supplier_id=record.source_supplier_id,
            target_supplier_id=record.target_supplier_id,
            merged_at=record.merged_at,
            undo_deadline=record.undo_deadline,
            is_permanent=record.is_permanent,
            source_snapshot=SupplierSnapshot.from_blob(record.source_snapshot),
            moved_invoice_ids=list(record.moved_invoice_ids or []),
            moved_payment_ids=list(record.moved_payment_ids or []),
            merged_balance=record.merged_balance,
            merged_opening_balance=record.merged_opening_balance,
            requested_by=record.requested_by,
        )


class PendingMergeRead(SupplierMergeRead):
    target_name: str | None = None
    seconds_remaining: int = 0
