from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from receipt_tracker.core.models import Base, Timestamped, UUIDPrimaryKey


class ReceiptStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"


class Receipt(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "receipts_receipt"

    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )

    file_name: Mapped[str] = mapped_column(String(512))
    file_display_name: Mapped[str | None] = mapped_column(String(512), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64), index=True)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)

    status: Mapped[ReceiptStatus] = mapped_column(
        Enum(ReceiptStatus, native_enum=False), index=True, default=ReceiptStatus.PENDING
    )
    # Set while an extraction job holds the receipt; stale values are reclaimable.
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    merchant_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    merchant_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    merchant_contact: Mapped[str | None] = mapped_column(String(300), nullable=True)
    transaction_date: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_amount: Mapped[str | None] = mapped_column(String(100), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    receipt_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list)
    raw_extracted_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner = relationship("User")
