from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import Supplier, PurchaseInvoice, SupplierPayment

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def quantize_amount(value) -> Decimal:
    return Decimal(value if value is not None else 0).quantize(CENT)


@dataclass(frozen=True)
class SupplierStats:
    supplier_id: int
    invoices_count: int
    payments_count: int
    invoices_total: Decimal
    payments_total: Decimal

    @property
    def balance(self) -> Decimal:
        return self.invoices_total - self.payments_total


def _invoice_totals(db: Session, supplier_id: int) -> tuple[int, Decimal]:
    count, total = db.execute(
        select(
            func.count(PurchaseInvoice.id),
            func.coalesce(func.sum(PurchaseInvoice.total_amount), 0),
        ).where(PurchaseInvoice.supplier_id == supplier_id)
    ).one()
    return int(count), quantize_amount(total)


def _payment_totals(db: Session, supplier_id: int) -> tuple[int, Decimal]:
    count, total = db.execute(
        select(
            func.count(SupplierPayment.id),
            func.coalesce(func.sum(SupplierPayment.amount), 0),
        ).where(SupplierPayment.supplier_id == supplier_id)
    ).one()
    return int(count), quantize_amount(total)


def compute_balance(db: Session, supplier_id: int) -> Decimal:
    """
    Live balance of a supplier.

    Règle métier :
        balance = SUM(invoices.total_amount) - SUM(payments.amount)
    over the records currently linked to the supplier (what we owe them).
    Read-only; storage errors propagate unchanged.
    """
    _, invoiced = _invoice_totals(db, supplier_id)
    _, paid = _payment_totals(db, supplier_id)
    return invoiced - paid


def supplier_stats(db: Session, supplier_id: int) -> SupplierStats:
    invoices_count, invoices_total = _invoice_totals(db, supplier_id)
    payments_count, payments_total = _payment_totals(db, supplier_id)
    return SupplierStats(
        supplier_id=int(supplier_id),
        invoices_count=invoices_count,
        payments_count=payments_count,
        invoices_total=invoices_total,
        payments_total=payments_total,
    )


class BalanceCache:
    """
    Read-through cache for list screens. Never the source of truth: merge and
    undo invalidate both suppliers on every commit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: dict[int, Decimal] = {}

    def get_or_compute(self, supplier_id: int, compute: Callable[[], Decimal]) -> Decimal:
        with self._lock:
            if supplier_id in self._values:
                return self._values[supplier_id]
        value = compute()
        with self._lock:
            self._values[supplier_id] = value
        return value

    def invalidate(self, *supplier_ids: int) -> None:
        with self._lock:
            for sid in supplier_ids:
                self._values.pop(int(sid), None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __contains__(self, supplier_id: int) -> bool:
        with self._lock:
            return int(supplier_id) in self._values


default_balance_cache = BalanceCache()


def list_suppliers_with_balances(
    db: Session,
    *,
    include_inactive: bool = False,
    cache: BalanceCache | None = None,
) -> list[dict]:
    stmt = select(Supplier).order_by(Supplier.name)
    if not include_inactive:
        stmt = stmt.where(Supplier.active.is_(True))
    rows: Iterable[Supplier] = db.execute(stmt).scalars().all()

    out = []
    for s in rows:
        if cache is not None:
            balance = cache.get_or_compute(s.id, lambda sid=s.id: compute_balance(db, sid))
        else:
            balance = compute_balance(db, s.id)
        out.append({"id": s.id, "name": s.name, "balance": balance})
    return out
