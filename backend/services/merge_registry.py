"""
Merge registry.

Durable store of supplier merges (the audit/undo records). A record is
created only by the merge executor and deleted only by the undo executor;
once its deadline passes it becomes permanent, either lazily at undo time or
through sweep_expired().
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from backend.app.db.models.models_v1 import AuditLog, Supplier, SupplierMerge
from backend.app.db.models.core_types import AuditAction, MergeState
from backend.app.schemas.supplier import SupplierSnapshot
from backend.services.clock import as_utc

logger = logging.getLogger(__name__)

UNDO_WINDOW = timedelta(hours=24)


def undo_deadline_for(merged_at: datetime) -> datetime:
    return as_utc(merged_at) + UNDO_WINDOW


def state_of(record: SupplierMerge, now: datetime) -> MergeState:
    if record.is_permanent or as_utc(now) > as_utc(record.undo_deadline):
        return MergeState.permanent
    return MergeState.pending


def time_remaining(record: SupplierMerge, now: datetime) -> timedelta:
    if record.is_permanent:
        return timedelta(0)
    remaining = as_utc(record.undo_deadline) - as_utc(now)
    return remaining if remaining > timedelta(0) else timedelta(0)


def write_audit(
    db: Session,
    *,
    action: AuditAction,
    entity_id: int,
    actor: str | None = None,
    meta: dict[str, Any] | None = None,
    entity_type: str = "supplier_merge",
) -> AuditLog:
    entry = AuditLog(
        actor=actor,
        action=action.value,
        entity_type=entity_type,
        entity_id=str(entity_id),
        meta=json.dumps(meta, default=str, sort_keys=True) if meta is not None else None,
    )
    db.add(entry)
    return entry


def create(
    db: Session,
    *,
    source: Supplier,
    target: Supplier,
    snapshot: SupplierSnapshot,
    moved_invoice_ids: list[int],
    moved_payment_ids: list[int],
    merged_balance: Decimal,
    now: datetime,
    requested_by: str | None = None,
) -> SupplierMerge:
    """Insert a pending merge record. Flushes, never commits."""
    merged_at = as_utc(now)
    record = SupplierMerge(
        source_supplier_id=source.id,
        target_supplier_id=target.id,
        merged_at=merged_at,
        undo_deadline=undo_deadline_for(merged_at),
        is_permanent=False,
        source_snapshot=snapshot.to_blob(),
        moved_invoice_ids=sorted(int(i) for i in moved_invoice_ids),
        moved_payment_ids=sorted(int(i) for i in moved_payment_ids),
        merged_balance=merged_balance,
        merged_opening_balance=snapshot.opening_balance,
        requested_by=requested_by,
    )
    db.add(record)
    db.flush()
    return record


def get(db: Session, merge_id: int, *, for_update: bool = False) -> SupplierMerge | None:
    stmt = select(SupplierMerge).where(SupplierMerge.id == merge_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def list_pending(db: Session, now: datetime) -> list[SupplierMerge]:
    return list(
        db.execute(
            select(SupplierMerge)
            .where(SupplierMerge.is_permanent.is_(False))
            .where(SupplierMerge.undo_deadline >= as_utc(now))
            .order_by(SupplierMerge.merged_at.desc(), SupplierMerge.id.desc())
        )
        .scalars()
        .all()
    )


def pending_into(db: Session, supplier_id: int, now: datetime) -> list[SupplierMerge]:
    """Merges into this supplier that can still be undone."""
    return list(
        db.execute(
            select(SupplierMerge)
            .where(SupplierMerge.target_supplier_id == supplier_id)
            .where(SupplierMerge.is_permanent.is_(False))
            .where(SupplierMerge.undo_deadline >= as_utc(now))
            .order_by(SupplierMerge.id.asc())
        )
        .scalars()
        .all()
    )


def list_for_supplier(db: Session, supplier_id: int) -> list[SupplierMerge]:
    return list(
        db.execute(
            select(SupplierMerge)
            .where(
                or_(
                    SupplierMerge.source_supplier_id == supplier_id,
                    SupplierMerge.target_supplier_id == supplier_id,
                )
            )
            .order_by(SupplierMerge.merged_at.desc())
        )
        .scalars()
        .all()
    )


def delete(db: Session, record: SupplierMerge) -> None:
    db.delete(record)
    db.flush()


def mark_permanent(db: Session, record: SupplierMerge, now: datetime) -> None:
    if record.is_permanent:
        return
    record.is_permanent = True
    record.permanent_at = as_utc(now)


def sweep_expired(db: Session, now: datetime, *, actor: str | None = "sweeper") -> int:
    """
    Flip every expired pending merge to permanent, then commit.

    Propriétés :
    - idempotent (a second run finds nothing to flip)
    - safe alongside merges/undos: rows are locked with FOR UPDATE and
      undo re-checks the deadline under its own lock
    - optional: undo checks the deadline lazily anyway
    """
    cutoff = as_utc(now)
    expired = (
        db.execute(
            select(SupplierMerge)
            .where(SupplierMerge.is_permanent.is_(False))
            .where(SupplierMerge.undo_deadline < cutoff)
            .order_by(SupplierMerge.id.asc())
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    for record in expired:
        mark_permanent(db, record, cutoff)
        write_audit(
            db,
            action=AuditAction.made_permanent,
            entity_id=record.id,
            actor=actor,
            meta={
                "source_supplier_id": record.source_supplier_id,
                "target_supplier_id": record.target_supplier_id,
                "undo_deadline": as_utc(record.undo_deadline).isoformat(),
            },
        )
    db.commit()

    if expired:
        logger.info("sweep made %d supplier merge(s) permanent", len(expired))
    return len(expired)
