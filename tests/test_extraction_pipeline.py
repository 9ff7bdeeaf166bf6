from __future__ import annotations

import json

from receipt_tracker.modules.extraction.ai import FALLBACK_PROMPT
from receipt_tracker.modules.extraction.errors import DocumentFetchError, ModelInvocationError
from receipt_tracker.modules.extraction.service import (
    ExtractionStage,
    ReceiptExtractionPipeline,
    ReceiptMetadata,
    normalize_model_output,
)

RECEIPT_ID = "2b7f4c1e-0d7a-4d59-9a43-3f0f1c2b9a10"
URL = "https://files.example.com/receipt.pdf"

VENDOR_JSON = json.dumps(
    {
        "issuer": {"name": "Acme", "address": "1 Main St"},
        "date": "2024-01-01",
        "grand_total": 50,
        "currency": "$",
        "line_items": [
            {"description": "A", "qty": 1, "price": 20, "subtotal": 20},
            {"description": "B", "qty": 1, "price": 30, "subtotal": 30},
        ],
    }
)


class _FakeStore:
    def __init__(self, *, exists: bool = True, claimable: bool = True) -> None:
        self.exists = exists
        self.claimable = claimable
        self.claims: list[str] = []
        self.releases: list[str] = []
        self.commits: list[tuple[str, object]] = []

    def get_receipt_metadata(self, receipt_id: str):
        if not self.exists:
            return None
        return ReceiptMetadata(receipt_id=receipt_id, file_name="receipt.pdf", owner_id="user-1")

    def claim(self, receipt_id: str, *, lease_seconds: int) -> bool:
        self.claims.append(receipt_id)
        return self.claimable

    def release(self, receipt_id: str) -> None:
        self.releases.append(receipt_id)

    def update_extracted_fields(self, receipt_id: str, fields) -> str:
        self.commits.append((receipt_id, fields))
        return "user-1"


class _FakeModel:
    def __init__(self, *responses, error: Exception | None = None) -> None:
        self.responses = list(responses)
        self.error = error
        self.calls: list[dict] = []

    def generate(self, *, document: bytes, prompt: str, response_schema=None) -> str:
        self.calls.append({"prompt": prompt, "response_schema": response_schema})
        if self.error:
            raise self.error
        return self.responses.pop(0)


class _FakeFetcher:
    def __init__(self, body: bytes = b"%PDF-1.4 test", error: Exception | None = None) -> None:
        self.body = body
        self.error = error

    def fetch(self, url: str) -> bytes:
        if self.error:
            raise self.error
        return self.body


def _pipeline(store, model, fetcher=None, **kwargs) -> ReceiptExtractionPipeline:
    return ReceiptExtractionPipeline(
        store=store, model=model, fetcher=fetcher or _FakeFetcher(), **kwargs
    )


def test_successful_extraction_commits_once():
    store = _FakeStore()
    model = _FakeModel(f"```json\n{VENDOR_JSON}\n```")

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.success
    assert result.owner_id == "user-1"
    assert result.error is None
    assert result.to_dict() == {"success": True, "receipt_id": RECEIPT_ID, "owner_id": "user-1"}
    assert len(store.commits) == 1
    assert store.releases == []

    _, fields = store.commits[0]
    assert fields.file_display_name == "receipt.pdf"
    assert fields.merchant_name == "Acme"
    assert fields.transaction_amount == "50"
    assert fields.currency == "$"
    assert [item.name for item in fields.items] == ["A", "B"]
    assert json.loads(fields.raw_extracted_data) == json.loads(VENDOR_JSON)
    assert model.calls[0]["response_schema"] is not None


def test_response_schema_can_be_disabled():
    model = _FakeModel(VENDOR_JSON)
    _pipeline(_FakeStore(), model, use_response_schema=False).run(receipt_id=RECEIPT_ID, url=URL)
    assert model.calls[0]["response_schema"] is None


def test_missing_receipt_fails_without_calling_model():
    store = _FakeStore(exists=False)
    model = _FakeModel(VENDOR_JSON)

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert not result.success
    assert result.error_code == "receipt_not_found"
    assert result.stage == ExtractionStage.FETCHING_METADATA
    assert model.calls == []
    assert store.commits == []


def test_busy_receipt_is_not_processed_twice():
    store = _FakeStore(claimable=False)
    model = _FakeModel(VENDOR_JSON)

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.error_code == "receipt_busy"
    assert model.calls == []
    assert store.commits == []
    assert store.releases == []


def test_model_failure_is_reported_and_lease_released():
    store = _FakeStore()
    model = _FakeModel(error=ModelInvocationError("quota exceeded"))

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.to_dict()["success"] is False
    assert result.error == "quota exceeded"
    assert result.error_code == "model_invocation_failed"
    assert result.stage == ExtractionStage.INVOKING_MODEL
    assert store.commits == []
    assert store.releases == [RECEIPT_ID]


def test_document_fetch_failure_is_a_model_invocation_failure():
    store = _FakeStore()
    fetcher = _FakeFetcher(error=DocumentFetchError("Failed to download document: 404"))

    result = _pipeline(store, _FakeModel(VENDOR_JSON), fetcher).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.error_code == "document_fetch_failed"
    assert store.commits == []


def test_fallback_prompt_is_used_when_output_is_not_json():
    store = _FakeStore()
    fallback_response = json.dumps(
        {
            "merchant_name": "ACME STORE",
            "merchant_address": "1 Main St",
            "merchant_contact": None,
            "transaction_date": "2024-01-01",
            "total_amount": 2.5,
            "currency": None,
            "payment_method": None,
            "summary": None,
            "line_items": [
                {"description": "Soda", "quantity": 1, "unit_price": 2.5, "total": 2.5}
            ],
        }
    )
    model = _FakeModel("I could not read that, sorry.", fallback_response)

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.success
    assert len(model.calls) == 2
    assert model.calls[1]["prompt"] == FALLBACK_PROMPT
    assert model.calls[1]["response_schema"] is not None

    fields = store.commits[0][1]
    assert fields.merchant_name == "ACME STORE"
    assert fields.transaction_date == "2024-01-01"
    assert fields.transaction_amount == "2.5"
    assert fields.currency == "$"
    assert [item.name for item in fields.items] == ["Soda"]


def test_fallback_without_schema_mode_sends_no_schema():
    model = _FakeModel("not json", '{"merchant_name": "ACME STORE", "total_amount": "2.50"}')

    result = _pipeline(_FakeStore(), model, use_response_schema=False).run(
        receipt_id=RECEIPT_ID, url=URL
    )

    assert result.success
    assert [c["response_schema"] for c in model.calls] == [None, None]


def test_unparseable_output_fails_with_parse_error():
    store = _FakeStore()
    model = _FakeModel("no json here", "still no json")

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.error_code == "output_parse_failed"
    assert result.stage == ExtractionStage.EXTRACTING_OUTPUT
    assert store.commits == []
    assert store.releases == [RECEIPT_ID]


def test_unparseable_output_without_fallback_makes_one_model_call():
    model = _FakeModel("no json here")
    result = _pipeline(_FakeStore(), model, fallback_prompt=False).run(
        receipt_id=RECEIPT_ID, url=URL
    )
    assert result.error_code == "output_parse_failed"
    assert len(model.calls) == 1


def test_all_empty_vendor_record_is_rejected_without_persisting():
    store = _FakeStore()
    model = _FakeModel('{"unknown_key": "x", "line_items": []}')

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert result.error_code == "no_usable_data"
    assert result.stage == ExtractionStage.COERCING
    assert store.commits == []


def test_unexpected_errors_do_not_escape_the_pipeline():
    store = _FakeStore()
    model = _FakeModel(error=RuntimeError("boom"))

    result = _pipeline(store, model).run(receipt_id=RECEIPT_ID, url=URL)

    assert not result.success
    assert result.error == "boom"
    assert result.error_code == "unexpected_error"
    assert store.releases == [RECEIPT_ID]


def test_normalization_is_deterministic():
    raw = f"Here is the data:\n```json\n{VENDOR_JSON}\n```"
    first = normalize_model_output(raw, file_display_name="receipt.pdf")
    second = normalize_model_output(raw, file_display_name="receipt.pdf")
    assert first == second
    assert json.dumps(first.to_dict()) == json.dumps(second.to_dict())
