from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class SupplierSnapshot(BaseModel):
    """
    Frozen copy of a supplier's display fields, taken at merge time.

    Kept separate from the ORM model: it is serialized into
    supplier_merges.source_snapshot and must stay readable when the
    suppliers table changes.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    phone: str | None = None
    email: str | None = None
    city: str | None = None
    address: str | None = None
    category: str | None = None
    balance: Decimal = Decimal("0")
    opening_balance: Decimal = Decimal("0")
    created_at: datetime | None = None

    def to_blob(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_blob(cls, blob: str) -> "SupplierSnapshot":
        return cls.model_validate_json(blob)


class SupplierBalanceRead(BaseModel):
    id: int
    name: str
    balance: Decimal  # READ ONLY, derived from linked records

    model_config = ConfigDict(from_attributes=True)
