from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from receipt_tracker.modules.receipts.models import ReceiptStatus


class ReceiptItemOut(BaseModel):
    name: str
    quantity: float
    unit_price: float
    total_price: float


class ReceiptOut(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    file_name: str
    file_display_name: str | None
    content_type: str | None
    byte_size: int
    status: ReceiptStatus
    merchant_name: str | None
    merchant_address: str | None
    merchant_contact: str | None
    transaction_date: str | None
    transaction_amount: str | None
    currency: str | None
    receipt_summary: str | None
    items: list[ReceiptItemOut] = Field(default_factory=list)
    processed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ReceiptStatusUpdate(BaseModel):
    status: ReceiptStatus


class DownloadUrlOut(BaseModel):
    download_url: str
    expires_in: int


class ExtractionEnqueuedOut(BaseModel):
    receipt_id: uuid.UUID
    task_id: str | None
