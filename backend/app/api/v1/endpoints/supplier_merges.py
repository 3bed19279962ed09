from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from backend.app.api.deps import get_merge_service
from backend.app.schemas.supplier_merge import PendingMergeRead, SupplierMergeRead
from backend.services import merge_registry
from backend.services.supplier_merge import SupplierMergeService

router = APIRouter(prefix="/supplier-merges")


# ---------- Schemas ----------
class MergeCreate(BaseModel):
    source_id: int
    target_id: int
    requested_by: str | None = Field(default=None, max_length=128)


class UndoRequest(BaseModel):
    requested_by: str | None = Field(default=None, max_length=128)


# ---------- Endpoints ----------
@router.get("/preview")
def preview_merge(
    source_id: int = Query(...),
    target_id: int = Query(...),
    service: SupplierMergeService = Depends(get_merge_service),
):
    p = service.preview(source_id, target_id)

    def _stats(s):
        return {
            "supplier_id": s.supplier_id,
            "invoices_count": s.invoices_count,
            "payments_count": s.payments_count,
            "invoices_total": s.invoices_total,
            "payments_total": s.payments_total,
            "balance": s.balance,
        }

    return {
        "source": _stats(p.source),
        "target": _stats(p.target),
        "combined_balance": p.combined_balance,
    }


@router.post("")
def create_merge(payload: MergeCreate, service: SupplierMergeService = Depends(get_merge_service)):
    record = service.merge(payload.source_id, payload.target_id, requested_by=payload.requested_by)
    return SupplierMergeRead.from_record(record)


@router.get("")
def list_pending_merges(service: SupplierMergeService = Depends(get_merge_service)):
    now = service.clock.now(service.db)
    out = []
    for m in service.list_pending():
        item = PendingMergeRead(
            **SupplierMergeRead.from_record(m).model_dump(),
            target_name=m.target.name if m.target else None,
            seconds_remaining=int(merge_registry.time_remaining(m, now).total_seconds()),
        )
        out.append(item)
    return out


@router.post("/sweep")
def sweep_expired_merges(service: SupplierMergeService = Depends(get_merge_service)):
    return {"made_permanent": service.sweep()}


@router.get("/{merge_id}")
def get_merge(merge_id: int, service: SupplierMergeService = Depends(get_merge_service)):
    record = merge_registry.get(service.db, merge_id)
    if not record:
        raise HTTPException(status_code=404, detail="Supplier merge not found")

    now = service.clock.now(service.db)
    return {
        **SupplierMergeRead.from_record(record).model_dump(),
        "state": merge_registry.state_of(record, now).value,
        "seconds_remaining": int(merge_registry.time_remaining(record, now).total_seconds()),
    }


@router.post("/{merge_id}/undo")
def undo_merge(
    merge_id: int,
    payload: UndoRequest | None = None,
    service: SupplierMergeService = Depends(get_merge_service),
):
    service.undo(merge_id, requested_by=payload.requested_by if payload else None)
    return {"ok": True, "merge_id": merge_id}
