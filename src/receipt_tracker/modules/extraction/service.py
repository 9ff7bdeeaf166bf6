from __future__ import annotations

import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from receipt_tracker.core.logging import get_logger, log_event, log_exception, monotonic_ms
from receipt_tracker.modules.extraction.ai import (
    EXTRACTION_PROMPT,
    FALLBACK_PROMPT,
    RECEIPT_RESPONSE_SCHEMA,
    DocumentFetcher,
    ReceiptModel,
)
from receipt_tracker.modules.extraction.coercion import CanonicalReceiptFields, coerce_receipt
from receipt_tracker.modules.extraction.errors import (
    ExtractionError,
    OutputParseError,
    ReceiptBusyError,
    ReceiptNotFoundError,
)
from receipt_tracker.modules.extraction.mapper import map_vendor_record
from receipt_tracker.modules.extraction.output import ParsedOutput, parse_model_output

logger = get_logger(__name__)


class ExtractionStage(str, enum.Enum):
    FETCHING_METADATA = "fetching_metadata"
    INVOKING_MODEL = "invoking_model"
    EXTRACTING_OUTPUT = "extracting_output"
    MAPPING_FIELDS = "mapping_fields"
    COERCING = "coercing"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ReceiptMetadata:
    receipt_id: str
    file_name: str
    owner_id: str | None = None


class ReceiptStore(Protocol):
    def get_receipt_metadata(self, receipt_id: str) -> ReceiptMetadata | None: ...

    def claim(self, receipt_id: str, *, lease_seconds: int) -> bool: ...

    def release(self, receipt_id: str) -> None: ...

    def update_extracted_fields(self, receipt_id: str, fields: CanonicalReceiptFields) -> str: ...


@dataclass(frozen=True)
class ExtractionResult:
    success: bool
    receipt_id: str
    owner_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    stage: ExtractionStage = ExtractionStage.DONE

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "receipt_id": self.receipt_id, "owner_id": self.owner_id}
        return {
            "success": False,
            "receipt_id": self.receipt_id,
            "error": self.error,
            "error_code": self.error_code,
            "stage": self.stage.value,
        }


def normalize_model_output(
    raw_text: str, *, file_display_name: str = ""
) -> CanonicalReceiptFields:
    """
    Output extraction, field mapping and coercion for one model response.

    Pure: the same raw text always yields identical fields.
    """
    parsed = parse_model_output(raw_text)
    if parsed is None:
        raise OutputParseError("Model output is not a JSON object", raw_text=raw_text)
    return coerce_receipt(
        map_vendor_record(parsed.payload),
        file_display_name=file_display_name,
        raw_extracted_data=json.dumps(parsed.payload, ensure_ascii=False),
    )


class ReceiptExtractionPipeline:
    """
    Runs one extraction job: metadata, lease, model call, parse, map, coerce, commit.

    Every failure ends the job with an `ExtractionResult`; nothing raises out of
    `run`. Extracted fields are committed at most once, and only on success.
    """

    def __init__(
        self,
        *,
        store: ReceiptStore,
        model: ReceiptModel,
        fetcher: DocumentFetcher,
        use_response_schema: bool = True,
        fallback_prompt: bool = True,
        lease_seconds: int = 30 * 60,
    ) -> None:
        self._store = store
        self._model = model
        self._fetcher = fetcher
        self._use_response_schema = use_response_schema
        self._fallback_prompt = fallback_prompt
        self._lease_seconds = lease_seconds

    def run(self, *, receipt_id: str, url: str) -> ExtractionResult:
        start = time.monotonic()
        stage = ExtractionStage.FETCHING_METADATA
        claimed = False
        log_event(logger, "extraction.start", receipt_id=receipt_id)
        try:
            metadata = self._store.get_receipt_metadata(receipt_id)
            if metadata is None:
                raise ReceiptNotFoundError(receipt_id)
            if not self._store.claim(receipt_id, lease_seconds=self._lease_seconds):
                raise ReceiptBusyError(receipt_id)
            claimed = True

            stage = self._enter(ExtractionStage.INVOKING_MODEL, receipt_id)
            document = self._fetcher.fetch(url)
            raw_text = self._model.generate(
                document=document,
                prompt=EXTRACTION_PROMPT,
                response_schema=RECEIPT_RESPONSE_SCHEMA if self._use_response_schema else None,
            )

            stage = self._enter(ExtractionStage.EXTRACTING_OUTPUT, receipt_id)
            parsed = self._parse_with_fallback(raw_text, document=document, receipt_id=receipt_id)

            stage = self._enter(ExtractionStage.MAPPING_FIELDS, receipt_id)
            mapped = map_vendor_record(parsed.payload)

            stage = self._enter(ExtractionStage.COERCING, receipt_id)
            fields = coerce_receipt(
                mapped,
                file_display_name=metadata.file_name,
                raw_extracted_data=json.dumps(parsed.payload, ensure_ascii=False),
            )

            stage = self._enter(ExtractionStage.PERSISTING, receipt_id)
            owner_id = self._store.update_extracted_fields(receipt_id, fields)
            claimed = False
        except ExtractionError as e:
            return self._fail(receipt_id, stage, e, start, claimed=claimed)
        except Exception as e:  # noqa: BLE001
            log_exception(
                logger,
                "extraction.error",
                receipt_id=receipt_id,
                stage=stage.value,
                duration_ms=monotonic_ms(start),
            )
            return self._fail(receipt_id, stage, e, start, claimed=claimed, logged=True)

        log_event(
            logger,
            "extraction.finish",
            receipt_id=receipt_id,
            status="success",
            parse_strategy=parsed.strategy,
            item_count=len(fields.items),
            missing_fields=fields.missing_fields() or None,
            duration_ms=monotonic_ms(start),
        )
        return ExtractionResult(
            success=True, receipt_id=receipt_id, owner_id=owner_id, stage=ExtractionStage.DONE
        )

    def _enter(self, stage: ExtractionStage, receipt_id: str) -> ExtractionStage:
        log_event(logger, "extraction.stage", receipt_id=receipt_id, stage=stage.value)
        return stage

    def _parse_with_fallback(
        self, raw_text: str, *, document: bytes, receipt_id: str
    ) -> ParsedOutput:
        parsed = parse_model_output(raw_text)
        if parsed is not None:
            return parsed

        log_event(
            logger,
            "extraction.output.unparseable",
            level=logging.WARNING,
            receipt_id=receipt_id,
            output_preview=raw_text[:200],
            fallback=self._fallback_prompt,
        )
        if not self._fallback_prompt:
            raise OutputParseError("Model output is not a JSON object", raw_text=raw_text)

        # The fallback asks for the canonical keys directly, so the mapper can read it.
        fallback_text = self._model.generate(
            document=document,
            prompt=FALLBACK_PROMPT,
            response_schema=RECEIPT_RESPONSE_SCHEMA if self._use_response_schema else None,
        )
        parsed = parse_model_output(fallback_text)
        if parsed is None:
            raise OutputParseError(
                "Model output is not a JSON object, even after the fallback prompt",
                raw_text=fallback_text or raw_text,
            )
        return parsed

    def _fail(
        self,
        receipt_id: str,
        stage: ExtractionStage,
        error: Exception,
        start: float,
        *,
        claimed: bool,
        logged: bool = False,
    ) -> ExtractionResult:
        if claimed:
            try:
                self._store.release(receipt_id)
            except Exception:  # noqa: BLE001
                log_exception(logger, "extraction.lease.release_failed", receipt_id=receipt_id)
        code = error.code if isinstance(error, ExtractionError) else "unexpected_error"
        if not logged:
            log_event(
                logger,
                "extraction.finish",
                level=logging.WARNING,
                receipt_id=receipt_id,
                status="failed",
                stage=stage.value,
                error_code=code,
                error=str(error),
                raw_text=getattr(error, "raw_text", None),
                duration_ms=monotonic_ms(start),
            )
        return ExtractionResult(
            success=False,
            receipt_id=receipt_id,
            error=str(error) or type(error).__name__,
            error_code=code,
            stage=stage,
        )
