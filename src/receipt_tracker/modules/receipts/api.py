from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from receipt_tracker.api.deps import get_current_user
from receipt_tracker.core.config import settings
from receipt_tracker.core.db import db_session
from receipt_tracker.core.logging import get_logger, log_event
from receipt_tracker.core.storage import get_storage
from receipt_tracker.modules.identity.models import User
from receipt_tracker.modules.receipts.models import Receipt, ReceiptStatus
from receipt_tracker.modules.receipts.schemas import (
    DownloadUrlOut,
    ExtractionEnqueuedOut,
    ReceiptOut,
    ReceiptStatusUpdate,
)
from receipt_tracker.modules.receipts.service import (
    create_receipt,
    delete_receipt,
    get_receipt_for_user,
    list_receipts,
    receipt_download_url,
    update_receipt_status,
)
from receipt_tracker.worker.tasks import extract_receipt_task

router = APIRouter(tags=["receipts"])
logger = get_logger(__name__)


def _enqueue_extraction(receipt: Receipt) -> str | None:
    url = receipt_download_url(receipt)
    async_result = extract_receipt_task.delay(str(receipt.id), url)
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="extract_receipt",
        celery_task_id=async_result.id,
        receipt_id=str(receipt.id),
    )
    return async_result.id


@router.post("/receipts", response_model=ReceiptOut, status_code=status.HTTP_201_CREATED)
async def upload_receipt(
    upload: UploadFile = File(...),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        filename=upload.filename or "receipt.pdf",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    receipt = create_receipt(
        session,
        user=user,
        filename=upload.filename or "receipt.pdf",
        content_type=upload.content_type,
        body=body,
    )
    _enqueue_extraction(receipt)
    session.refresh(receipt)
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/receipts", response_model=list[ReceiptOut])
def list_receipts_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReceiptOut]:
    return [
        ReceiptOut.model_validate(r, from_attributes=True)
        for r in list_receipts(session, user=user)
    ]


@router.get("/receipts/{receipt_id}", response_model=ReceiptOut)
def get_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.get("/receipts/{receipt_id}/file")
def download_receipt_file(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    body = get_storage().get(key=receipt.storage_key)
    return Response(
        content=body,
        media_type=receipt.content_type or "application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{receipt.file_name}"'},
    )


@router.get("/receipts/{receipt_id}/download-url", response_model=DownloadUrlOut)
def get_download_url(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> DownloadUrlOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    return DownloadUrlOut(
        download_url=receipt_download_url(receipt),
        expires_in=settings.download_url_expiry_seconds,
    )


@router.patch("/receipts/{receipt_id}/status", response_model=ReceiptOut)
def update_status(
    receipt_id: uuid.UUID,
    payload: ReceiptStatusUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReceiptOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    receipt = update_receipt_status(session, receipt=receipt, new_status=payload.status)
    return ReceiptOut.model_validate(receipt, from_attributes=True)


@router.delete("/receipts/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_receipt_endpoint(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    delete_receipt(session, receipt=receipt)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/receipts/{receipt_id}/extract",
    response_model=ExtractionEnqueuedOut,
    status_code=status.HTTP_202_ACCEPTED,
)
def reextract_receipt(
    receipt_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ExtractionEnqueuedOut:
    receipt = get_receipt_for_user(session, receipt_id=receipt_id, user=user)
    if receipt.status != ReceiptStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Receipt is already processed; set its status to PENDING to extract again",
        )
    task_id = _enqueue_extraction(receipt)
    return ExtractionEnqueuedOut(receipt_id=receipt.id, task_id=task_id)
