from __future__ import annotations

import hashlib
import uuid
from collections.abc import Callable
from datetime import timedelta

from fastapi import HTTPException, status
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from receipt_tracker.core.config import settings
from receipt_tracker.core.logging import get_logger, log_event
from receipt_tracker.core.models import utcnow
from receipt_tracker.core.storage import get_storage
from receipt_tracker.modules.extraction.coercion import CanonicalReceiptFields
from receipt_tracker.modules.extraction.errors import ReceiptNotFoundError
from receipt_tracker.modules.extraction.service import ReceiptMetadata
from receipt_tracker.modules.identity.models import User
from receipt_tracker.modules.receipts.models import Receipt, ReceiptStatus

logger = get_logger(__name__)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def is_pdf_upload(*, filename: str, content_type: str | None) -> bool:
    return "pdf" in (content_type or "").lower() or filename.lower().endswith(".pdf")


def _parse_receipt_id(receipt_id: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(receipt_id, uuid.UUID):
        return receipt_id
    try:
        return uuid.UUID(str(receipt_id))
    except ValueError:
        return None


def assert_receipt_access(*, receipt: Receipt, user: User) -> None:
    if user.is_admin or receipt.owner_id == user.id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized to access this receipt"
    )


def create_receipt(
    session: Session,
    *,
    user: User,
    filename: str,
    content_type: str | None,
    body: bytes,
) -> Receipt:
    filename = _sanitize_filename(filename) or "receipt.pdf"
    if not is_pdf_upload(filename=filename, content_type=content_type):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid file type: Only PDF files are allowed",
        )
    if not body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")
    if len(body) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File is too large"
        )

    key = f"receipts/{user.id}/{uuid.uuid4()}-{filename}"
    stored = get_storage().put(key=key, body=body)

    receipt = Receipt(
        owner_id=user.id,
        file_name=filename,
        content_type=content_type,
        byte_size=stored.byte_size,
        sha256=_sha256_hex(body),
        storage_key=stored.key,
        status=ReceiptStatus.PENDING,
        items=[],
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.created",
        receipt_id=str(receipt.id),
        owner_id=str(user.id),
        byte_size=receipt.byte_size,
    )
    return receipt


def list_receipts(session: Session, *, user: User) -> list[Receipt]:
    return list(
        session.scalars(
            select(Receipt).where(Receipt.owner_id == user.id).order_by(Receipt.created_at.desc())
        )
    )


def get_receipt(session: Session, *, receipt_id: str | uuid.UUID) -> Receipt | None:
    rid = _parse_receipt_id(receipt_id)
    if rid is None:
        return None
    return session.scalar(select(Receipt).where(Receipt.id == rid))


def get_receipt_for_user(session: Session, *, receipt_id: uuid.UUID, user: User) -> Receipt:
    receipt = get_receipt(session, receipt_id=receipt_id)
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    assert_receipt_access(receipt=receipt, user=user)
    return receipt


def update_receipt_status(
    session: Session, *, receipt: Receipt, new_status: ReceiptStatus
) -> Receipt:
    prev_status = receipt.status
    receipt.status = new_status
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    log_event(
        logger,
        "receipt.status.changed",
        receipt_id=str(receipt.id),
        from_status=prev_status.value,
        to_status=new_status.value,
        reason="manual",
    )
    return receipt


def delete_receipt(session: Session, *, receipt: Receipt) -> None:
    get_storage().delete(key=receipt.storage_key)
    session.delete(receipt)
    session.commit()
    log_event(logger, "receipt.deleted", receipt_id=str(receipt.id))


def receipt_download_url(receipt: Receipt) -> str:
    return get_storage().url_for(
        key=receipt.storage_key, expires_in=settings.download_url_expiry_seconds
    )


class SqlReceiptStore:
    """Receipt persistence as seen by the extraction pipeline; one session per call."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get_receipt_metadata(self, receipt_id: str) -> ReceiptMetadata | None:
        with self._session_factory() as session:
            receipt = get_receipt(session, receipt_id=receipt_id)
            if receipt is None:
                return None
            return ReceiptMetadata(
                receipt_id=str(receipt.id),
                file_name=receipt.file_name,
                owner_id=str(receipt.owner_id),
            )

    def claim(self, receipt_id: str, *, lease_seconds: int) -> bool:
        rid = _parse_receipt_id(receipt_id)
        if rid is None:
            return False
        now = utcnow()
        stale_before = now - timedelta(seconds=lease_seconds)
        with self._session_factory() as session:
            result = session.execute(
                update(Receipt)
                .where(
                    Receipt.id == rid,
                    Receipt.status == ReceiptStatus.PENDING,
                    or_(
                        Receipt.processing_started_at.is_(None),
                        Receipt.processing_started_at < stale_before,
                    ),
                )
                .values(processing_started_at=now)
            )
            session.commit()
            return bool(result.rowcount)

    def release(self, receipt_id: str) -> None:
        rid = _parse_receipt_id(receipt_id)
        if rid is None:
            return
        with self._session_factory() as session:
            session.execute(
                update(Receipt).where(Receipt.id == rid).values(processing_started_at=None)
            )
            session.commit()

    def update_extracted_fields(self, receipt_id: str, fields: CanonicalReceiptFields) -> str:
        with self._session_factory() as session:
            receipt = get_receipt(session, receipt_id=receipt_id)
            if receipt is None:
                raise ReceiptNotFoundError(receipt_id)
            prev_status = receipt.status
            receipt.file_display_name = fields.file_display_name or receipt.file_name
            receipt.merchant_name = fields.merchant_name
            receipt.merchant_address = fields.merchant_address
            receipt.merchant_contact = fields.merchant_contact
            receipt.transaction_date = fields.transaction_date
            receipt.transaction_amount = fields.transaction_amount
            receipt.currency = fields.currency
            receipt.receipt_summary = fields.receipt_summary
            receipt.items = fields.items_as_dicts()
            receipt.raw_extracted_data = fields.raw_extracted_data
            receipt.status = ReceiptStatus.PROCESSED
            receipt.processed_at = utcnow()
            receipt.processing_started_at = None
            session.add(receipt)
            session.commit()
            log_event(
                logger,
                "receipt.status.changed",
                receipt_id=str(receipt.id),
                from_status=prev_status.value,
                to_status=receipt.status.value,
                reason="extraction_complete",
            )
            return str(receipt.owner_id)
