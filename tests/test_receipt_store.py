from __future__ import annotations

import json
from datetime import timedelta

from sqlalchemy import select

from receipt_tracker.core.db import SessionLocal
from receipt_tracker.core.models import utcnow
from receipt_tracker.modules.extraction.coercion import CanonicalReceiptFields, ReceiptItem
from receipt_tracker.modules.extraction.service import ReceiptExtractionPipeline
from receipt_tracker.modules.identity.service import create_user
from receipt_tracker.modules.receipts.models import Receipt, ReceiptStatus
from receipt_tracker.modules.receipts.service import SqlReceiptStore, create_receipt

PDF_BODY = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


def _make_receipt(session, *, email: str = "owner@example.com", filename: str = "lunch.pdf"):
    user = create_user(session, email=email, password="pw", full_name="Owner")
    receipt = create_receipt(
        session,
        user=user,
        filename=filename,
        content_type="application/pdf",
        body=PDF_BODY,
    )
    return user, receipt


def _fields(**overrides) -> CanonicalReceiptFields:
    values = dict(
        file_display_name="lunch.pdf",
        merchant_name="Cafe Rio",
        merchant_address="5 Elm St",
        merchant_contact="555-0100",
        transaction_date="2024-03-02",
        transaction_amount="18.5",
        currency="$",
        receipt_summary="This receipt is from Cafe Rio.",
        items=(ReceiptItem(name="Burrito", quantity=1, unit_price=18.5, total_price=18.5),),
        raw_extracted_data=json.dumps({"issuer": {"name": "Cafe Rio"}}),
    )
    values.update(overrides)
    return CanonicalReceiptFields(**values)


def test_metadata_reports_file_name_and_owner():
    with SessionLocal() as session:
        user, receipt = _make_receipt(session)

    store = SqlReceiptStore(SessionLocal)
    metadata = store.get_receipt_metadata(str(receipt.id))
    assert metadata
    assert metadata.file_name == "lunch.pdf"
    assert metadata.owner_id == str(user.id)

    assert store.get_receipt_metadata("not-a-uuid") is None
    assert store.get_receipt_metadata("2b7f4c1e-0d7a-4d59-9a43-3f0f1c2b9a10") is None


def test_claim_is_exclusive_until_released():
    with SessionLocal() as session:
        _, receipt = _make_receipt(session)

    store = SqlReceiptStore(SessionLocal)
    assert store.claim(str(receipt.id), lease_seconds=600) is True
    assert store.claim(str(receipt.id), lease_seconds=600) is False

    store.release(str(receipt.id))
    assert store.claim(str(receipt.id), lease_seconds=600) is True


def test_stale_claim_can_be_taken_over():
    with SessionLocal() as session:
        _, receipt = _make_receipt(session)
        receipt.processing_started_at = utcnow() - timedelta(hours=2)
        session.add(receipt)
        session.commit()

    store = SqlReceiptStore(SessionLocal)
    assert store.claim(str(receipt.id), lease_seconds=600) is True


def test_update_extracted_fields_marks_receipt_processed():
    with SessionLocal() as session:
        user, receipt = _make_receipt(session)

    store = SqlReceiptStore(SessionLocal)
    assert store.claim(str(receipt.id), lease_seconds=600)
    owner_id = store.update_extracted_fields(str(receipt.id), _fields())
    assert owner_id == str(user.id)

    with SessionLocal() as session:
        refreshed = session.scalar(select(Receipt).where(Receipt.id == receipt.id))
        assert refreshed
        assert refreshed.status == ReceiptStatus.PROCESSED
        assert refreshed.processed_at is not None
        assert refreshed.processing_started_at is None
        assert refreshed.merchant_name == "Cafe Rio"
        assert refreshed.transaction_amount == "18.5"
        assert refreshed.items == [
            {"name": "Burrito", "quantity": 1, "unit_price": 18.5, "total_price": 18.5}
        ]
        assert json.loads(refreshed.raw_extracted_data) == {"issuer": {"name": "Cafe Rio"}}

    # Processed receipts are not picked up again.
    assert store.claim(str(receipt.id), lease_seconds=600) is False


def test_pipeline_against_database_store_persists_once():
    with SessionLocal() as session:
        _, receipt = _make_receipt(session)

    class _Model:
        calls = 0

        def generate(self, *, document, prompt, response_schema=None):
            _Model.calls += 1
            return '{"issuer": {"name": "Cafe Rio"}, "date": "2024-03-02", "grand_total": "18.50"}'

    class _Fetcher:
        def fetch(self, url):
            return PDF_BODY

    pipeline = ReceiptExtractionPipeline(
        store=SqlReceiptStore(SessionLocal), model=_Model(), fetcher=_Fetcher()
    )
    first = pipeline.run(receipt_id=str(receipt.id), url="file:///unused.pdf")
    second = pipeline.run(receipt_id=str(receipt.id), url="file:///unused.pdf")

    assert first.success
    assert not second.success
    assert second.error_code == "receipt_busy"
    assert _Model.calls == 1

    with SessionLocal() as session:
        refreshed = session.scalar(select(Receipt).where(Receipt.id == receipt.id))
        assert refreshed
        assert refreshed.file_display_name == "lunch.pdf"
        assert refreshed.merchant_name == "Cafe Rio"
        assert refreshed.transaction_amount == "18.50"
        assert refreshed.currency == "$"
        assert refreshed.receipt_summary.startswith("This receipt is from Cafe Rio.")


def test_failed_extraction_leaves_receipt_pending_and_unclaimed():
    with SessionLocal() as session:
        _, receipt = _make_receipt(session)

    class _Model:
        def generate(self, *, document, prompt, response_schema=None):
            return "{}"

    class _Fetcher:
        def fetch(self, url):
            return PDF_BODY

    pipeline = ReceiptExtractionPipeline(
        store=SqlReceiptStore(SessionLocal), model=_Model(), fetcher=_Fetcher()
    )
    result = pipeline.run(receipt_id=str(receipt.id), url="file:///unused.pdf")
    assert result.error_code == "no_usable_data"

    with SessionLocal() as session:
        refreshed = session.scalar(select(Receipt).where(Receipt.id == receipt.id))
        assert refreshed
        assert refreshed.status == ReceiptStatus.PENDING
        assert refreshed.processing_started_at is None
        assert refreshed.merchant_name is None
