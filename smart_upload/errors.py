"""
Error taxonomy for the Smart Upload pipeline.

Every error carries a stable `code`, the HTTP status the API maps it to,
and whether the job queue should retry a handler that raised it.
"""

from typing import Optional


class SmartUploadError(Exception):
    """Base class for all pipeline errors."""

    code = "ERR_SMART_UPLOAD"
    status_code = 500
    retryable = True

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationError(SmartUploadError):
    """Malformed input: bad mime type, oversized file, bad payload."""

    code = "ERR_VALIDATION"
    status_code = 400
    retryable = False


class NotFoundError(SmartUploadError):
    """Batch, item or proposal does not exist."""

    code = "ERR_NOT_FOUND"
    status_code = 404
    retryable = False

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InvalidStateError(SmartUploadError):
    """Operation illegal for the current lifecycle state."""

    code = "ERR_INVALID_STATE"
    status_code = 409
    retryable = False


class InvalidBatchState(InvalidStateError):
    code = "ERR_INVALID_BATCH_STATE"


class ExtractionError(SmartUploadError):
    """PDF / OCR failure. Retried by the queue, then dead-lettered."""

    NOT_A_PDF = "NOT_A_PDF"
    PASSWORD_PROTECTED = "PASSWORD_PROTECTED"
    PARSE_FAILURE = "PARSE_FAILURE"

    code = "ERR_EXTRACTION"
    status_code = 422
    retryable = True

    def __init__(self, message: str, reason: str = PARSE_FAILURE):
        self.reason = reason
        super().__init__(message, code=f"ERR_{reason}")


class SplitError(ExtractionError):
    """The source PDF could not be opened for splitting."""

    def __init__(self, message: str):
        super().__init__(message, reason=ExtractionError.PARSE_FAILURE)


class TransientBackendError(SmartUploadError):
    """OCR/LLM/network failure, retried with backoff."""

    code = "ERR_BACKEND_UNAVAILABLE"
    status_code = 503
    retryable = True


class IngestionError(SmartUploadError):
    """One proposal failed to ingest. Isolated per proposal."""

    code = "ERR_INGESTION"
    status_code = 500
    retryable = False

    def __init__(self, message: str, proposal_id: Optional[str] = None):
        self.proposal_id = proposal_id
        super().__init__(message)


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are retried; typed ones declare their policy."""
    if isinstance(exc, SmartUploadError):
        return exc.retryable
    return True
