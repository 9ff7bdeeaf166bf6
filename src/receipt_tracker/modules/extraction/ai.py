from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import unquote, urlparse

import httpx

from receipt_tracker.core.config import Settings
from receipt_tracker.core.logging import get_logger, log_event, monotonic_ms
from receipt_tracker.modules.extraction.errors import DocumentFetchError, ModelInvocationError

logger = get_logger(__name__)

PDF_MIME_TYPE = "application/pdf"

SYSTEM_PROMPT = (
    "You are a receipt scanning assistant. You extract and structure information from "
    "scanned receipts and invoices:\n"
    "- Merchant information: store name, address, contact details.\n"
    "- Transaction details: date, receipt number, payment method.\n"
    "- Itemized purchases: product names, quantities, unit prices, line totals.\n"
    "- Totals: subtotal, taxes, total paid, discounts.\n"
    "Correct obvious OCR errors. Normalize dates to YYYY-MM-DD. "
    "If a detail is missing or unclear, return null for it. Never guess."
)

EXTRACTION_PROMPT = (
    "Extract all text and tables from this invoice or receipt PDF. "
    "Output a single valid JSON object with all fields and line items you can find. "
    "Only output JSON."
)

FALLBACK_PROMPT = (
    "Read this receipt PDF again and return only a JSON object with these keys: "
    "merchant_name, merchant_address, merchant_contact, transaction_date, "
    "total_amount, currency, payment_method, summary, and line_items (a list of "
    "objects with description, quantity, unit_price and total). "
    "Use null for anything you cannot read. No prose, no code fences."
)


def _nullable(type_: str) -> dict[str, Any]:
    return {"type": type_, "nullable": True}


RECEIPT_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "merchant_name": _nullable("STRING"),
        "merchant_address": _nullable("STRING"),
        "merchant_contact": _nullable("STRING"),
        "transaction_date": _nullable("STRING"),
        "total_amount": _nullable("NUMBER"),
        "currency": _nullable("STRING"),
        "payment_method": _nullable("STRING"),
        "summary": _nullable("STRING"),
        "line_items": {
            "type": "ARRAY",
            "nullable": True,
            "items": {
                "type": "OBJECT",
                "properties": {
                    "description": _nullable("STRING"),
                    "quantity": _nullable("NUMBER"),
                    "unit_price": _nullable("NUMBER"),
                    "total": _nullable("NUMBER"),
                },
            },
        },
    },
}


class ReceiptModel(Protocol):
    def generate(
        self,
        *,
        document: bytes,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str: ...


class DocumentFetcher(Protocol):
    def fetch(self, url: str) -> bytes: ...


class GeminiReceiptModel:
    """Gemini generateContent over plain HTTP, with the PDF sent as an inline part."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        base_url: str,
        timeout_seconds: float,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._url = f"{base_url.rstrip('/')}/v1beta/models/{model}:generateContent"
        self._timeout = timeout_seconds
        self._client = client or httpx.Client(follow_redirects=True)

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.Client | None = None):
        return cls(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.model_timeout_seconds,
            client=client,
        )

    def _payload(
        self, *, document: bytes, prompt: str, response_schema: dict[str, Any] | None
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {"temperature": 0}
        if response_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = response_schema
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": PDF_MIME_TYPE,
                                "data": base64.b64encode(document).decode("ascii"),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": generation_config,
        }

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        resp = self._client.post(
            self._url,
            headers={"x-goog-api-key": self._api_key or "", "Content-Type": "application/json"},
            json=payload,
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp

    def generate(
        self,
        *,
        document: bytes,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
    ) -> str:
        if not self._api_key:
            raise ModelInvocationError("GEMINI_API_KEY is not set")
        if not document:
            raise ModelInvocationError("Downloaded PDF is empty. Check the file URL and storage.")

        start = time.monotonic()
        payload = self._payload(document=document, prompt=prompt, response_schema=response_schema)
        try:
            try:
                resp = self._post(payload)
            except httpx.HTTPStatusError as e:
                # Some models reject responseSchema; retry once in free-text mode.
                if response_schema is None or e.response.status_code not in {400, 422}:
                    raise
                log_event(
                    logger,
                    "model.schema_mode.rejected",
                    model=self._model,
                    status_code=e.response.status_code,
                )
                payload = self._payload(document=document, prompt=prompt, response_schema=None)
                resp = self._post(payload)
        except httpx.HTTPStatusError as e:
            raise ModelInvocationError(
                f"Model request failed with HTTP {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"Model request failed: {e}") from e

        text = _response_text(resp)
        log_event(
            logger,
            "model.generate.finish",
            model=self._model,
            schema_mode="responseSchema" in payload["generationConfig"],
            document_bytes=len(document),
            output_chars=len(text),
            duration_ms=monotonic_ms(start),
        )
        return text


def _response_text(resp: httpx.Response) -> str:
    try:
        raw = resp.json()
    except ValueError as e:
        raise ModelInvocationError("Model returned a non-JSON HTTP body") from e
    if not isinstance(raw, dict):
        raise ModelInvocationError("Model returned an unexpected response shape")

    block_reason = (raw.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise ModelInvocationError(f"Model blocked the request: {block_reason}")

    candidates = raw.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise ModelInvocationError("Model returned no candidates")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        finish = candidates[0].get("finishReason") if isinstance(candidates[0], dict) else None
        raise ModelInvocationError(f"Model returned no content (finishReason={finish})")
    return "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))


class HttpDocumentFetcher:
    """Loads the uploaded PDF from an http(s) URL or a local file:// URL."""

    def __init__(self, *, timeout_seconds: float = 30.0, client: httpx.Client | None = None):
        self._timeout = timeout_seconds
        self._client = client or httpx.Client(follow_redirects=True)

    def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
            try:
                body = path.read_bytes()
            except OSError as e:
                raise DocumentFetchError(f"Failed to read document: {e}") from e
        elif parsed.scheme in {"http", "https"}:
            try:
                resp = self._client.get(url, timeout=self._timeout)
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise DocumentFetchError(f"Failed to download document: {e}") from e
            body = resp.content
        else:
            raise DocumentFetchError(f"Unsupported document URL scheme: {parsed.scheme or '-'}")

        if not body:
            raise DocumentFetchError("Downloaded PDF is empty. Check the file URL and storage.")
        log_event(logger, "document.fetch.finish", scheme=parsed.scheme, byte_size=len(body))
        return body
