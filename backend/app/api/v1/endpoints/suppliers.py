from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_balance_cache, get_db
from backend.app.db.models.models_v1 import Supplier
from backend.app.schemas.supplier import SupplierBalanceRead
from backend.services import merge_registry
from backend.services.balances import (
    BalanceCache,
    list_suppliers_with_balances,
    supplier_stats,
)

router = APIRouter(prefix="/suppliers")


class SupplierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=128)
    address: str | None = Field(default=None, max_length=255)
    category: str | None = Field(default=None, max_length=64)
    opening_balance: Decimal = Decimal("0")
    is_protected: bool = False


@router.get("", response_model=list[SupplierBalanceRead])
def list_suppliers(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    cache: BalanceCache = Depends(get_balance_cache),
):
    return list_suppliers_with_balances(db, include_inactive=include_inactive, cache=cache)


@router.post("")
def create_supplier(payload: SupplierCreate, db: Session = Depends(get_db)):
    exists = db.execute(select(Supplier).where(Supplier.name == payload.name)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Supplier already exists")

    s = Supplier(
        name=payload.name,
        phone=payload.phone,
        email=payload.email,
        city=payload.city,
        address=payload.address,
        category=payload.category,
        opening_balance=payload.opening_balance,
        balance=Decimal("0"),
        is_protected=payload.is_protected,
        active=True,
    )
    db.add(s)
    db.commit()
    db.refresh(s)
    return {"id": s.id, "name": s.name}


@router.get("/{supplier_id}/balance")
def get_supplier_balance(supplier_id: int, db: Session = Depends(get_db)):
    s = db.get(Supplier, supplier_id)
    if not s:
        raise HTTPException(status_code=404, detail="Supplier not found")

    stats = supplier_stats(db, supplier_id)
    return {
        "id": s.id,
        "name": s.name,
        "active": s.active,
        "stored_balance": s.balance,
        "balance": stats.balance,
        "invoices_count": stats.invoices_count,
        "payments_count": stats.payments_count,
        "invoices_total": stats.invoices_total,
        "payments_total": stats.payments_total,
    }


@router.get("/{supplier_id}/merges")
def list_supplier_merges(supplier_id: int, db: Session = Depends(get_db)):
    if not db.get(Supplier, supplier_id):
        raise HTTPException(status_code=404, detail="Supplier not found")

    rows = merge_registry.list_for_supplier(db, supplier_id)
    return [
        {
            "id": m.id,
            "source_supplier_id": m.source_supplier_id,
            "target_supplier_id": m.target_supplier_id,
            "merged_at": m.merged_at,
            "undo_deadline": m.undo_deadline,
            "is_permanent": m.is_permanent,
            "merged_balance": m.merged_balance,
        }
        for m in rows
    ]
