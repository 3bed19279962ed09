import os
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session, sessionmaker

from backend.app.db.base import Base
from backend.app.db.session import make_engine
from backend.app.db.models.models_v1 import PurchaseInvoice, Supplier, SupplierPayment
from backend.services.balances import BalanceCache, compute_balance
from backend.services.clock import FixedClock
from backend.services.locks import AccountLockManager
from backend.services.supplier_merge import SupplierMergeService

MERGE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Fresh schema per test.

    SQLite file under tmp_path by default; TEST_DATABASE_URL may point at a
    throwaway Postgres database instead.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}"
    eng = make_engine(url)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(MERGE_TIME)


@pytest.fixture
def locks() -> AccountLockManager:
    return AccountLockManager(timeout=5.0)


@pytest.fixture
def cache() -> BalanceCache:
    return BalanceCache()


@pytest.fixture
def service(db_session, clock, locks, cache) -> SupplierMergeService:
    return SupplierMergeService(db_session, clock=clock, locks=locks, cache=cache, retry_backoff=0)


class Ledger:
    """Stands in for the invoice/payment flows that own suppliers and records."""

    def __init__(self, db: Session):
        self.db = db
        self._invoice_seq = 0

    def supplier(self, name: str, *, is_protected: bool = False, active: bool = True, **fields) -> Supplier:
        s = Supplier(
            name=name,
            balance=Decimal("0"),
            opening_balance=Decimal(str(fields.pop("opening_balance", "0"))),
            is_protected=is_protected,
            active=active,
            **fields,
        )
        self.db.add(s)
        self.db.commit()
        return s

    def invoice(self, supplier: Supplier, amount) -> PurchaseInvoice:
        self._invoice_seq += 1
        inv = PurchaseInvoice(
            invoice_number=f"PI-{supplier.id}-{self._invoice_seq:04d}",
            supplier_id=supplier.id,
            total_amount=Decimal(str(amount)),
        )
        self.db.add(inv)
        supplier.balance = supplier.balance + Decimal(str(amount))
        self.db.commit()
        return inv

    def payment(self, supplier: Supplier, amount) -> SupplierPayment:
        pay = SupplierPayment(supplier_id=supplier.id, amount=Decimal(str(amount)), method="CASH")
        self.db.add(pay)
        supplier.balance = supplier.balance - Decimal(str(amount))
        self.db.commit()
        return pay

    def refresh(self, *objs):
        for obj in objs:
            self.db.refresh(obj)

    def live_balance(self, supplier: Supplier) -> Decimal:
        return compute_balance(self.db, supplier.id)


@pytest.fixture
def ledger(db_session) -> Ledger:
    return Ledger(db_session)


@pytest.fixture
def example_pair(ledger):
    """
    S: 3 invoices totalling 500 and one payment of 200 (balance 300).
    T: balance 100.
    """
    s = ledger.supplier("Atlas Timber", phone="+20 100 000 0001", city="Cairo", opening_balance="50")
    t = ledger.supplier("Atlas Timber Co.", city="Giza")
    for amount in ("200", "175.50", "124.50"):
        ledger.invoice(s, amount)
    ledger.payment(s, "200")
    ledger.invoice(t, "100")
    return s, t
