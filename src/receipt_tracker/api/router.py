from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from receipt_tracker.core.storage import diagnose_storage
from receipt_tracker.modules.identity.api import router as identity_router
from receipt_tracker.modules.receipts.api import router as receipts_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(receipts_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage(*, write_test: bool = False) -> JSONResponse:
    result = diagnose_storage(write_test=write_test)
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)
