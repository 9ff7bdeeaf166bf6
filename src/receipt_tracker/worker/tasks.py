from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import receipt_tracker.models  # noqa: F401
# isort: on

import time
from typing import Any

from receipt_tracker.core.config import settings
from receipt_tracker.core.logging import (
    get_logger,
    job_context,
    log_event,
    log_exception,
    monotonic_ms,
)
from receipt_tracker.modules.extraction.service import ReceiptExtractionPipeline
from receipt_tracker.worker.celery_app import celery_app

logger = get_logger(__name__)

_pipeline: ReceiptExtractionPipeline | None = None


def build_pipeline() -> ReceiptExtractionPipeline:
    from receipt_tracker.core.db import SessionLocal
    from receipt_tracker.modules.extraction.ai import GeminiReceiptModel, HttpDocumentFetcher
    from receipt_tracker.modules.receipts.service import SqlReceiptStore

    return ReceiptExtractionPipeline(
        store=SqlReceiptStore(SessionLocal),
        model=GeminiReceiptModel.from_settings(settings),
        fetcher=HttpDocumentFetcher(),
        use_response_schema=settings.extraction_response_schema_enabled,
        fallback_prompt=settings.extraction_fallback_prompt_enabled,
        lease_seconds=settings.extraction_lease_seconds,
    )


def get_pipeline() -> ReceiptExtractionPipeline:
    """One pipeline (and one set of HTTP clients) per worker process."""
    global _pipeline  # noqa: PLW0603
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


@celery_app.task(name="extract_receipt", bind=True)
def extract_receipt_task(self, receipt_id: str, url: str) -> dict[str, Any]:
    task_id = getattr(self.request, "id", None)
    start = time.monotonic()
    with job_context(task_id=task_id, receipt_id=receipt_id):
        log_event(logger, "celery.task.start", task_name="extract_receipt")
        try:
            result = get_pipeline().run(receipt_id=receipt_id, url=url)
        except Exception:
            log_exception(
                logger,
                "celery.task.error",
                task_name="extract_receipt",
                duration_ms=monotonic_ms(start),
            )
            raise
        log_event(
            logger,
            "celery.task.finish",
            task_name="extract_receipt",
            success=result.success,
            error_code=result.error_code,
            duration_ms=monotonic_ms(start),
        )
        return result.to_dict()
