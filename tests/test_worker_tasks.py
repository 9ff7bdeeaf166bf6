from __future__ import annotations

from receipt_tracker.modules.extraction.service import ExtractionResult, ExtractionStage
from receipt_tracker.worker import tasks


class _Pipeline:
    def __init__(self, result: ExtractionResult) -> None:
        self.result = result
        self.runs: list[tuple[str, str]] = []

    def run(self, *, receipt_id: str, url: str) -> ExtractionResult:
        self.runs.append((receipt_id, url))
        return self.result


def test_extract_task_returns_pipeline_result(monkeypatch):
    pipeline = _Pipeline(ExtractionResult(success=True, receipt_id="r-1", owner_id="u-1"))
    monkeypatch.setattr(tasks, "_pipeline", pipeline)

    out = tasks.extract_receipt_task.apply(args=("r-1", "file:///tmp/r.pdf")).get()

    assert out == {"success": True, "receipt_id": "r-1", "owner_id": "u-1"}
    assert pipeline.runs == [("r-1", "file:///tmp/r.pdf")]


def test_extract_task_reports_failures_as_data(monkeypatch):
    pipeline = _Pipeline(
        ExtractionResult(
            success=False,
            receipt_id="r-2",
            error="Receipt not found: r-2",
            error_code="receipt_not_found",
            stage=ExtractionStage.FETCHING_METADATA,
        )
    )
    monkeypatch.setattr(tasks, "_pipeline", pipeline)

    out = tasks.extract_receipt_task.apply(args=("r-2", "file:///tmp/r.pdf")).get()

    assert out["success"] is False
    assert out["error_code"] == "receipt_not_found"
    assert out["stage"] == "fetching_metadata"


def test_build_pipeline_uses_configured_model(monkeypatch):
    monkeypatch.setattr(tasks.settings, "extraction_fallback_prompt_enabled", False)
    pipeline = tasks.build_pipeline()
    assert pipeline._fallback_prompt is False
    assert pipeline._model._model == tasks.settings.gemini_model
