from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import get_settings
from backend.app.core.logging import configure_logging
from backend.services.errors import (
    BusyError,
    DeadlineExpiredError,
    InvariantViolation,
    MergeValidationError,
    StorageError,
)

configure_logging(get_settings().log_level)

app = FastAPI(title="Supplier Ledger", version="0.1.0")
app.include_router(v1_router, prefix="/v1")


def _error(status_code: int, exc) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(MergeValidationError)
async def merge_validation_error_handler(request: Request, exc: MergeValidationError):
    return _error(404 if exc.is_not_found else 400, exc)


@app.exception_handler(BusyError)
async def busy_error_handler(request: Request, exc: BusyError):
    return _error(409, exc)


@app.exception_handler(DeadlineExpiredError)
async def deadline_expired_handler(request: Request, exc: DeadlineExpiredError):
    return _error(410, exc)


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    return _error(500, exc)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return _error(503, exc)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
