from __future__ import annotations


class ExtractionError(Exception):
    """Base class for failures that end an extraction job."""

    code = "extraction_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ReceiptNotFoundError(ExtractionError):
    code = "receipt_not_found"

    def __init__(self, receipt_id: str) -> None:
        super().__init__(f"Receipt not found: {receipt_id}")
        self.receipt_id = receipt_id


class ReceiptBusyError(ExtractionError):
    code = "receipt_busy"

    def __init__(self, receipt_id: str) -> None:
        super().__init__(f"Receipt is already processed or being processed: {receipt_id}")
        self.receipt_id = receipt_id


class ModelInvocationError(ExtractionError):
    code = "model_invocation_failed"


class DocumentFetchError(ModelInvocationError):
    code = "document_fetch_failed"


class OutputParseError(ExtractionError):
    code = "output_parse_failed"

    def __init__(self, message: str, *, raw_text: str) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class NoUsableDataError(ExtractionError):
    code = "no_usable_data"
