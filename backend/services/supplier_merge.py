"""
Supplier merge and undo.

merge(source, target) moves every purchase invoice and supplier payment of
the source onto the target, adds the source balance to the target,
deactivates the source and records a SupplierMerge. undo(merge_id) reverses
it exactly while the 24h window is open, using the stored record as the
source of truth.

Both run as one database transaction:
- in-process locks on {source, target} (+ merge record for undo), canonical order
- SELECT ... FOR UPDATE on the same rows, ascending id
- every precondition checked before the first write
- any failure rolls back everything; transient storage errors retry the
  whole transaction a bounded number of times
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, TypeVar

from sqlalchemy import select, update, text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.core.config import get_settings
from backend.app.db.models.models_v1 import (
    PurchaseInvoice,
    Supplier,
    SupplierMerge,
    SupplierPayment,
)
from backend.app.db.models.core_types import AuditAction, RecordKind
from backend.app.schemas.supplier import SupplierSnapshot
from backend.services import merge_registry
from backend.services.balances import (
    BalanceCache,
    SupplierStats,
    compute_balance,
    default_balance_cache,
    supplier_stats,
)
from backend.services.clock import Clock, DatabaseClock, as_utc
from backend.services.errors import (
    BusyError,
    DeadlineExpiredError,
    InvariantViolation,
    MergeValidationError,
    StorageError,
    SupplierMergeError,
)
from backend.services.locks import (
    AccountLockManager,
    account_key,
    default_lock_manager,
    merge_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LINKED_MODELS = {
    RecordKind.invoice: PurchaseInvoice,
    RecordKind.payment: SupplierPayment,
}

# Postgres SQLSTATEs
LOCK_NOT_AVAILABLE = "55P03"
TRANSIENT_SQLSTATES = {"40001", "40P01"}  # serialization_failure, deadlock_detected


@dataclass(frozen=True)
class MergePreview:
    source: SupplierStats
    target: SupplierStats

    @property
    def combined_balance(self) -> Decimal:
        return self.target.balance + self.source.balance


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_lock_unavailable(exc: SQLAlchemyError) -> bool:
    return _sqlstate(exc) == LOCK_NOT_AVAILABLE


def _is_transient(exc: SQLAlchemyError) -> bool:
    if _sqlstate(exc) in TRANSIENT_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class SupplierMergeService:
    """
    Merge and undo over one Session.

    The service owns the session's transaction: merge() and undo() commit on
    success and roll back on failure, so pending caller work goes with them.
    Only the checks made before any lock is taken (same supplier, unknown
    merge id) leave it untouched.
    """

    def __init__(
        self,
        db: Session,
        *,
        clock: Clock | None = None,
        locks: AccountLockManager | None = None,
        cache: BalanceCache | None = None,
        max_attempts: int | None = None,
        retry_backoff: float | None = None,
        lock_timeout: float | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.clock = clock or DatabaseClock()
        self.locks = locks or default_lock_manager
        self.cache = cache if cache is not None else default_balance_cache
        self.max_attempts = max_attempts or settings.merge_max_attempts
        self.retry_backoff = settings.merge_retry_backoff_seconds if retry_backoff is None else retry_backoff
        self.lock_timeout = settings.merge_lock_timeout_seconds if lock_timeout is None else lock_timeout
        self.db_lock_timeout_ms = settings.db_lock_timeout_ms

    # ---------- Public API ----------
    def merge(self, source_id: int, target_id: int, *, requested_by: str | None = None) -> SupplierMerge:
        source_id, target_id = int(source_id), int(target_id)
        if source_id == target_id:
            raise MergeValidationError(
                "Cannot merge a supplier into itself",
                code=MergeValidationError.SAME_ACCOUNT,
            )

        keys = [account_key(source_id), account_key(target_id)]
        with self.locks.hold(keys, timeout=self.lock_timeout):
            record = self._run_transaction(
                "merge",
                lambda: self._merge_once(source_id, target_id, requested_by),
            )

        self.cache.invalidate(source_id, target_id)
        logger.info(
            "supplier merge committed merge_id=%s source=%s target=%s merged_balance=%s "
            "invoices=%d payments=%d",
            record.id,
            source_id,
            target_id,
            record.merged_balance,
            len(record.moved_invoice_ids),
            len(record.moved_payment_ids),
        )
        return record

    def undo(self, merge_id: int, *, requested_by: str | None = None) -> None:
        merge_id = int(merge_id)
        # unlocked read, only to learn which suppliers to lock
        try:
            existing = merge_registry.get(self.db, merge_id)
            ids = (existing.source_supplier_id, existing.target_supplier_id) if existing else None
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"Could not read supplier merge {merge_id}") from exc
        if ids is None:
            raise MergeValidationError(
                f"Supplier merge {merge_id} not found",
                code=MergeValidationError.MERGE_NOT_FOUND,
            )

        source_id, target_id = ids
        keys = [account_key(source_id), account_key(target_id), merge_key(merge_id)]
        with self.locks.hold(keys, timeout=self.lock_timeout):
            self._run_transaction(
                "undo",
                lambda: self._undo_once(merge_id, source_id, target_id, requested_by),
            )

        self.cache.invalidate(source_id, target_id)
        logger.info("supplier merge undone merge_id=%s source=%s target=%s", merge_id, source_id, target_id)

    def preview(self, source_id: int, target_id: int) -> MergePreview:
        """Merge numbers shown before confirming. Read-only, no locks."""
        source_id, target_id = int(source_id), int(target_id)
        if source_id == target_id:
            raise MergeValidationError(
                "Cannot merge a supplier into itself",
                code=MergeValidationError.SAME_ACCOUNT,
            )
        source = self.db.get(Supplier, source_id)
        target = self.db.get(Supplier, target_id)
        self._validate_merge(source, target, source_id, target_id)
        self._check_no_pending_merge_into(source, self.clock.now(self.db))
        return MergePreview(
            source=supplier_stats(self.db, source_id),
            target=supplier_stats(self.db, target_id),
        )

    def list_pending(self) -> list[SupplierMerge]:
        return merge_registry.list_pending(self.db, self.clock.now(self.db))

    def sweep(self) -> int:
        try:
            return merge_registry.sweep_expired(self.db, self.clock.now(self.db))
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError("Sweep of expired supplier merges failed") from exc

    # ---------- Transaction runner ----------
    def _run_transaction(self, op: str, body: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = body()
                self.db.commit()
                return result
            except SupplierMergeError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                if _is_lock_unavailable(exc):
                    raise BusyError(f"Supplier {op} is blocked by a concurrent operation") from exc
                if not _is_transient(exc) or attempt == self.max_attempts:
                    logger.error("supplier %s failed after %d attempt(s): %s", op, attempt, exc)
                    raise StorageError(f"Supplier {op} failed and was rolled back") from exc
                logger.warning("supplier %s attempt %d/%d failed, retrying: %s", op, attempt, self.max_attempts, exc)
                time.sleep(self.retry_backoff * attempt)
            except Exception:
                self.db.rollback()
                raise
        raise StorageError(f"Supplier {op} failed and was rolled back")  # pragma: no cover

    def _set_db_lock_timeout(self) -> None:
        if self.db.get_bind().dialect.name == "postgresql" and self.db_lock_timeout_ms:
            self.db.execute(text(f"SET LOCAL lock_timeout = '{int(self.db_lock_timeout_ms)}ms'"))

    def _lock_suppliers(self, supplier_ids: list[int]) -> dict[int, Supplier]:
        rows = (
            self.db.execute(
                select(Supplier)
                .where(Supplier.id.in_(sorted(set(supplier_ids))))
                .order_by(Supplier.id.asc())
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )
        return {int(s.id): s for s in rows}

    # ---------- Merge ----------
    def _validate_merge(
        self,
        source: Supplier | None,
        target: Supplier | None,
        source_id: int,
        target_id: int,
    ) -> None:
        if source is None:
            raise MergeValidationError(
                f"Source supplier {source_id} not found",
                code=MergeValidationError.SOURCE_NOT_FOUND,
            )
        if target is None:
            raise MergeValidationError(
                f"Target supplier {target_id} not found",
                code=MergeValidationError.TARGET_NOT_FOUND,
            )
        if source.is_protected:
            raise MergeValidationError(
                f"Supplier '{source.name}' is protected and cannot be merged into another supplier",
                code=MergeValidationError.PROTECTED_ACCOUNT,
            )
        if not source.active:
            raise MergeValidationError(
                f"Source supplier '{source.name}' is inactive",
                code=MergeValidationError.SOURCE_INACTIVE,
            )
        if not target.active:
            raise MergeValidationError(
                f"Target supplier '{target.name}' is inactive",
                code=MergeValidationError.TARGET_INACTIVE,
            )

    def _check_no_pending_merge_into(self, source: Supplier, now: datetime) -> None:
        """
        Règle métier :
            a supplier that absorbed a merge still inside its undo window
            cannot be merged away; the moved records must stay on it until
            that merge is undone or becomes permanent.
        """
        pending = merge_registry.pending_into(self.db, source.id, now)
        if pending:
            raise MergeValidationError(
                f"Supplier '{source.name}' absorbed merge(s) {[m.id for m in pending]} that can still be undone",
                code=MergeValidationError.SOURCE_HAS_PENDING_MERGE,
            )

    def _linked_ids(self, kind: RecordKind, supplier_id: int) -> list[int]:
        model = LINKED_MODELS[kind]
        rows = self.db.execute(
            select(model.id).where(model.supplier_id == supplier_id).order_by(model.id.asc())
        ).scalars()
        return [int(rid) for rid in rows]

    def _relink(self, kind: RecordKind, record_id: int, *, from_id: int, to_id: int) -> None:
        model = LINKED_MODELS[kind]
        result = self.db.execute(
            update(model)
            .where(model.id == record_id)
            .where(model.supplier_id == from_id)
            .values(supplier_id=to_id)
        )
        if result.rowcount != 1:
            raise InvariantViolation(
                f"{kind.value} {record_id} is no longer linked to supplier {from_id}"
            )

    def _merge_once(self, source_id: int, target_id: int, requested_by: str | None) -> SupplierMerge:
        self._set_db_lock_timeout()
        suppliers = self._lock_suppliers([source_id, target_id])
        source = suppliers.get(source_id)
        target = suppliers.get(target_id)
        self._validate_merge(source, target, source_id, target_id)
        now = self.clock.now(self.db)
        self._check_no_pending_merge_into(source, now)

        # 1. snapshot + balances before any write
        snapshot = SupplierSnapshot.model_validate(source)
        source_balance = compute_balance(self.db, source_id)
        target_before = compute_balance(self.db, target_id)

        # 2. enumerate + relink
        moved = {kind: self._linked_ids(kind, source_id) for kind in LINKED_MODELS}
        for kind, record_ids in moved.items():
            for record_id in record_ids:
                self._relink(kind, record_id, from_id=source_id, to_id=target_id)

        # 3. explicit balance, deactivate source
        expected = target_before + source_balance
        target.balance = expected
        source.active = False

        # 4. registry + audit
        record = merge_registry.create(
            self.db,
            source=source,
            target=target,
            snapshot=snapshot,
            moved_invoice_ids=moved[RecordKind.invoice],
            moved_payment_ids=moved[RecordKind.payment],
            merged_balance=source_balance,
            now=now,
            requested_by=requested_by,
        )
        merge_registry.write_audit(
            self.db,
            action=AuditAction.merge,
            entity_id=record.id,
            actor=requested_by,
            meta={
                "source_supplier_id": source_id,
                "target_supplier_id": target_id,
                "source_name": snapshot.name,
                "merged_balance": str(source_balance),
                "target_balance_before": str(target_before),
                "moved_invoice_ids": record.moved_invoice_ids,
                "moved_payment_ids": record.moved_payment_ids,
            },
        )
        self.db.flush()

        # 5. the explicit sum must match a fresh derivation before commit
        derived = compute_balance(self.db, target_id)
        if derived != expected:
            logger.error(
                "merge balance drift source=%s target=%s expected=%s derived=%s",
                source_id,
                target_id,
                expected,
                derived,
            )
            raise InvariantViolation(
                f"Target balance mismatch after relink (expected {expected}, derived {derived})"
            )
        remaining = sum(len(self._linked_ids(kind, source_id)) for kind in LINKED_MODELS)
        if remaining:
            raise InvariantViolation(f"{remaining} record(s) are still linked to merged supplier {source_id}")

        return record

    # ---------- Undo ----------
    def _undo_once(self, merge_id: int, source_id: int, target_id: int, requested_by: str | None) -> None:
        self._set_db_lock_timeout()
        suppliers = self._lock_suppliers([source_id, target_id])
        record = merge_registry.get(self.db, merge_id, for_update=True)
        if record is None:
            raise MergeValidationError(
                f"Supplier merge {merge_id} not found",
                code=MergeValidationError.MERGE_NOT_FOUND,
            )
        if record.is_permanent:
            raise MergeValidationError(
                f"Supplier merge {merge_id} is permanent and can no longer be undone",
                code=MergeValidationError.ALREADY_PERMANENT,
            )
        now = self.clock.now(self.db)
        if now > as_utc(record.undo_deadline):
            raise DeadlineExpiredError(
                f"Undo window for supplier merge {merge_id} closed at {as_utc(record.undo_deadline).isoformat()}"
            )

        source = suppliers.get(source_id)
        target = suppliers.get(target_id)
        if source is None or target is None:
            raise InvariantViolation(f"Suppliers of merge {merge_id} are missing")

        # 1. reactivate; merge never touched the other display fields
        source.active = True

        # 2. move the recorded ids back, nothing else
        moved = {
            RecordKind.invoice: list(record.moved_invoice_ids or []),
            RecordKind.payment: list(record.moved_payment_ids or []),
        }
        for kind, record_ids in moved.items():
            for record_id in record_ids:
                self._relink(kind, int(record_id), from_id=target_id, to_id=source_id)

        # 3. stored value, not a recomputation
        target.balance = target.balance - record.merged_balance

        self.db.flush()
        restored = compute_balance(self.db, source_id)
        if restored != record.merged_balance:
            logger.warning(
                "undo of merge %s: moved records now total %s, stored merged_balance is %s",
                merge_id,
                restored,
                record.merged_balance,
            )

        # 4. drop the record, keep the history
        merge_registry.write_audit(
            self.db,
            action=AuditAction.undo,
            entity_id=merge_id,
            actor=requested_by,
            meta={
                "source_supplier_id": source_id,
                "target_supplier_id": target_id,
                "merged_balance": str(record.merged_balance),
                "moved_invoice_ids": moved[RecordKind.invoice],
                "moved_payment_ids": moved[RecordKind.payment],
            },
        )
        merge_registry.delete(self.db, record)
