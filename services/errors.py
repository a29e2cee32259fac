"""
Domain errors and failure classification.

Every error raised across a service boundary is a DomainError carrying an
HTTP status and a stable code. ``is_transient`` decides whether a failure
talking to an external service is worth retrying.
"""

from typing import Any, Optional

import httpx


class DomainError(Exception):
    """Base domain error."""

    code = "DOMAIN_ERROR"
    status_code = 500
    transient = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UploadValidationError(ValidationError):
    code = "BAD_REQUEST"


class PayloadTooLargeError(ValidationError):
    code = "PAYLOAD_TOO_LARGE"
    status_code = 413


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(DomainError):
    code = "CONFLICT"
    status_code = 409


class RateLimitError(DomainError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    transient = True

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Any] = None):
        super().__init__(message, details)


# --- PDF content errors (permanent, surfaced as job ERROR) -------------------

class PdfProcessingError(DomainError):
    code = "PDF_PROCESSING_ERROR"
    status_code = 422


class EncryptedPdfError(PdfProcessingError):
    code = "PDF_ENCRYPTED"

    def __init__(self):
        super().__init__("Unsupported PDF: the document is encrypted", {"type": "encrypted"})


class CorruptPdfError(PdfProcessingError):
    code = "PDF_CORRUPT"

    def __init__(self):
        super().__init__("The PDF file is corrupted or unreadable", {"type": "corrupt"})


class EmptyPdfError(PdfProcessingError):
    code = "PDF_EMPTY"

    def __init__(self):
        super().__init__(
            "No text could be extracted from the PDF (it may be a scanned image)",
            {"type": "empty"},
        )


# --- External service errors -------------------------------------------------

class DraftGenerationError(DomainError):
    code = "AI_DRAFT_ERROR"
    status_code = 502


class EmbeddingError(DomainError):
    code = "EMBEDDING_ERROR"
    status_code = 502
    transient = True


class EmbeddingRejectedError(EmbeddingError):
    """The provider refused the request (4xx other than 429)."""

    code = "EMBEDDING_REJECTED"
    transient = False


class VectorIndexError(DomainError):
    code = "VECTOR_INDEX_ERROR"
    status_code = 502
    transient = True


class MalformedInputError(VectorIndexError):
    """Rejected by the index itself; retrying the same input cannot succeed."""

    code = "VECTOR_INDEX_MALFORMED_INPUT"
    status_code = 400
    transient = False


class JobStateError(ConflictError):
    code = "JOB_STATE_CONFLICT"


def is_transient(exc: BaseException) -> bool:
    """Classify a failure from an external call as retryable or not."""
    if isinstance(exc, DomainError):
        return exc.transient
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (ValueError, TypeError)):
        return False
    # Unknown remote failures are treated as retryable
    return True


def describe_error(exc: BaseException) -> dict:
    """Serializable details kept alongside a failed retry item."""
    details = {
        "type": type(exc).__name__,
        "transient": is_transient(exc),
    }
    if isinstance(exc, DomainError):
        details["code"] = exc.code
    if isinstance(exc, httpx.HTTPStatusError):
        details["status_code"] = exc.response.status_code
    return details
