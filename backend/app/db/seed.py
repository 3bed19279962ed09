from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select

from backend.app.core.config import get_settings
from backend.app.core.logging import configure_logging
from backend.app.db.session import SessionLocal
from backend.app.db.models.models_v1 import Supplier

logger = logging.getLogger(__name__)

# walk-in / cash purchases land here; it must never disappear into another supplier
DEFAULT_SUPPLIER_NAME = "Default supplier"


def run_seed(db=None) -> Supplier:
    own_session = db is None
    db = db or SessionLocal()
    try:
        supplier = db.scalar(select(Supplier).where(Supplier.is_protected.is_(True)).order_by(Supplier.id))
        if not supplier:
            supplier = Supplier(
                name=DEFAULT_SUPPLIER_NAME,
                balance=Decimal("0"),
                opening_balance=Decimal("0"),
                active=True,
                is_protected=True,
            )
            db.add(supplier)
            db.commit()
            db.refresh(supplier)
            logger.info("seeded protected supplier id=%s", supplier.id)
        return supplier
    finally:
        if own_session:
            db.close()


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    s = run_seed()
    print(f"SEED OK: protected supplier id={s.id}")
