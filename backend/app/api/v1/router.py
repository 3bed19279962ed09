from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.suppliers import router as suppliers_router
from backend.app.api.v1.endpoints.supplier_merges import router as supplier_merges_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(suppliers_router, tags=["suppliers"])
router.include_router(supplier_merges_router, tags=["supplier_merges"])
