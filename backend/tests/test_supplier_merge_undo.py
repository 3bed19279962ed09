import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backend.app.db.models.core_types import AuditAction
from backend.app.db.models.models_v1 import (
    AuditLog,
    PurchaseInvoice,
    Supplier,
    SupplierMerge,
    SupplierPayment,
)
from backend.services.balances import compute_balance
from backend.services.clock import DatabaseClock, FixedClock
from backend.services.errors import DeadlineExpiredError, InvariantViolation, MergeValidationError
from backend.services.supplier_merge import SupplierMergeService


def _owners(db, model):
    return dict(db.execute(select(model.id, model.supplier_id)).all())


def _state(db, *supplier_ids):
    db.expire_all()
    return {
        "invoices": _owners(db, PurchaseInvoice),
        "payments": _owners(db, SupplierPayment),
        "suppliers": {
            sid: (db.get(Supplier, sid).balance, db.get(Supplier, sid).active) for sid in supplier_ids
        },
        "live": {sid: compute_balance(db, sid) for sid in supplier_ids},
    }


def test_undo_example_scenario(example_pair, service, db_session):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    record = service.merge(s_id, t_id)
    merge_id = record.id
    moved_payment_ids = list(record.moved_payment_ids)

    service.undo(merge_id)

    db_session.expire_all()
    assert db_session.get(Supplier, t_id).balance == Decimal("100.00")
    assert db_session.get(Supplier, s_id).active is True
    assert set(_owners(db_session, PurchaseInvoice).values()) == {s_id, t_id}
    assert compute_balance(db_session, s_id) == Decimal("300.00")
    assert sorted(
        pid for pid, owner in _owners(db_session, SupplierPayment).items() if owner == s_id
    ) == moved_payment_ids
    assert db_session.get(SupplierMerge, merge_id) is None


@pytest.mark.parametrize(
    "source_invoices,source_payments,target_invoices",
    [
        ([], [], []),
        (["10"], ["3"], []),
        (["1", "2", "3"], [], ["4"]),
        ([], ["7.77"], ["100", "0.5"]),
    ],
)
def test_merge_then_undo_is_identity(
    ledger, service, db_session, source_invoices, source_payments, target_invoices
):
    s = ledger.supplier("Source", email="s@example.com", address="12 Port Said St", opening_balance="10")
    t = ledger.supplier("Target")
    for amount in source_invoices:
        ledger.invoice(s, amount)
    for amount in source_payments:
        ledger.payment(s, amount)
    for amount in target_invoices:
        ledger.invoice(t, amount)
    s_id, t_id = s.id, t.id
    before = _state(db_session, s_id, t_id)

    record = service.merge(s_id, t_id)
    service.undo(record.id)

    after = _state(db_session, s_id, t_id)
    assert after == before
    source = db_session.get(Supplier, s_id)
    assert (source.email, source.address, source.opening_balance) == (
        "s@example.com",
        "12 Port Said St",
        Decimal("10.00"),
    )
    assert db_session.execute(select(func.count(SupplierMerge.id))).scalar_one() == 0


def test_undo_keeps_transactions_the_target_gained_meanwhile(example_pair, ledger, service, db_session):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    record = service.merge(s_id, t_id)

    # unrelated purchase booked on the target during the window
    target = db_session.get(Supplier, t_id)
    new_invoice = ledger.invoice(target, "60")

    service.undo(record.id)

    db_session.expire_all()
    assert db_session.get(Supplier, t_id).balance == Decimal("160.00")
    assert db_session.get(PurchaseInvoice, new_invoice.id).supplier_id == t_id
    assert compute_balance(db_session, t_id) == Decimal("160.00")
    assert compute_balance(db_session, s_id) == Decimal("300.00")


def test_undo_uses_stored_merged_balance(example_pair, service, db_session):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    record = service.merge(s_id, t_id)

    # a moved invoice is edited during the window; undo still subtracts the stored 300
    moved = db_session.get(PurchaseInvoice, record.moved_invoice_ids[0])
    moved.total_amount = moved.total_amount + Decimal("1")
    db_session.commit()

    service.undo(record.id)

    db_session.expire_all()
    assert db_session.get(Supplier, t_id).balance == Decimal("100.00")
    assert compute_balance(db_session, s_id) == Decimal("301.00")


def test_undo_writes_audit_row(example_pair, service, db_session):
    s, t = example_pair
    record = service.merge(s.id, t.id)
    merge_id = record.id

    service.undo(merge_id, requested_by="auditor")

    row = db_session.execute(
        select(AuditLog).where(AuditLog.action == AuditAction.undo.value)
    ).scalar_one()
    assert row.entity_id == str(merge_id)
    assert row.actor == "auditor"
    assert json.loads(row.meta)["merged_balance"] == "300.00"


def test_undo_invalidates_balance_cache(example_pair, service, cache):
    s, t = example_pair
    record = service.merge(s.id, t.id)
    cache.get_or_compute(s.id, lambda: Decimal("0"))
    cache.get_or_compute(t.id, lambda: Decimal("400"))

    service.undo(record.id)

    assert s.id not in cache
    assert t.id not in cache


# ---------- Deadline ----------
def test_undo_after_deadline_is_rejected_and_mutates_nothing(example_pair, service, clock, db_session):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    record = service.merge(s_id, t_id)
    merge_id = record.id
    merged = _state(db_session, s_id, t_id)

    clock.advance(timedelta(hours=25))
    with pytest.raises(DeadlineExpiredError):
        service.undo(merge_id)

    assert _state(db_session, s_id, t_id) == merged
    assert db_session.get(SupplierMerge, merge_id) is not None


def test_undo_exactly_at_deadline_is_allowed(example_pair, service, clock, db_session):
    s, t = example_pair
    record = service.merge(s.id, t.id)

    clock.advance(timedelta(hours=24))
    service.undo(record.id)

    assert db_session.execute(select(func.count(SupplierMerge.id))).scalar_one() == 0


def test_deadline_checked_against_database_clock(example_pair, db_session, locks, cache):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    back_then = FixedClock(datetime.now(timezone.utc) - timedelta(hours=25))
    record = SupplierMergeService(db_session, clock=back_then, locks=locks, cache=cache).merge(s_id, t_id)

    live = SupplierMergeService(db_session, clock=DatabaseClock(), locks=locks, cache=cache)
    with pytest.raises(DeadlineExpiredError):
        live.undo(record.id)

    db_session.expire_all()
    assert db_session.get(Supplier, s_id).active is False
    assert db_session.get(Supplier, t_id).balance == Decimal("400.00")


def test_undo_of_permanent_merge_is_rejected(example_pair, service, clock, db_session):
    s, t = example_pair
    record = service.merge(s.id, t.id)
    merge_id = record.id

    clock.advance(timedelta(hours=30))
    assert service.sweep() == 1
    clock.advance(timedelta(hours=-30))

    with pytest.raises(MergeValidationError) as excinfo:
        service.undo(merge_id)
    assert excinfo.value.code == MergeValidationError.ALREADY_PERMANENT


# ---------- Not found / conflicts ----------
def test_undo_unknown_merge(service):
    with pytest.raises(MergeValidationError) as excinfo:
        service.undo(424242)
    assert excinfo.value.code == MergeValidationError.MERGE_NOT_FOUND
    assert excinfo.value.is_not_found


def test_undo_twice_reports_not_found(example_pair, service):
    s, t = example_pair
    record = service.merge(s.id, t.id)
    merge_id = record.id
    service.undo(merge_id)

    with pytest.raises(MergeValidationError) as excinfo:
        service.undo(merge_id)
    assert excinfo.value.code == MergeValidationError.MERGE_NOT_FOUND


def test_undo_aborts_when_a_moved_record_was_relinked_elsewhere(example_pair, ledger, service, db_session):
    s, t = example_pair
    s_id, t_id = s.id, t.id
    other = ledger.supplier("Someone Else")
    record = service.merge(s_id, t_id)
    merge_id = record.id
    moved_invoice_ids = list(record.moved_invoice_ids)

    stray = db_session.get(PurchaseInvoice, moved_invoice_ids[-1])
    stray.supplier_id = other.id
    db_session.commit()

    with pytest.raises(InvariantViolation):
        service.undo(merge_id)

    db_session.expire_all()
    assert db_session.get(Supplier, s_id).active is False
    assert db_session.get(SupplierMerge, merge_id) is not None
    owners = _owners(db_session, PurchaseInvoice)
    assert [owners[i] for i in moved_invoice_ids[:-1]] == [t_id, t_id]


def test_undo_lookup_leaves_caller_session_untouched(service, db_session):
    draft = Supplier(name="Draft Supplier", balance=Decimal("0"), opening_balance=Decimal("0"))
    db_session.add(draft)

    with pytest.raises(MergeValidationError):
        service.undo(424242)

    assert draft in db_session.new
