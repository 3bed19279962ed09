from __future__ import annotations

from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from backend.app.db.session import SessionLocal
from backend.services.balances import BalanceCache, default_balance_cache
from backend.services.supplier_merge import SupplierMergeService

def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_balance_cache() -> BalanceCache:
    return default_balance_cache


def get_merge_service(
    db: Session = Depends(get_db),
    cache: BalanceCache = Depends(get_balance_cache),
) -> SupplierMergeService:
    return SupplierMergeService(db, cache=cache)
