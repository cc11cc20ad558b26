"""
Centralized exception handling for the team RAG service.
"""
from typing import Any, Dict, Optional
import structlog

logger = structlog.get_logger(__name__)


class TeamRAGException(Exception):
    """Base exception for the team RAG service."""

    def __init__(
        self,
        message: str,
        error_code: str = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
        user_message: Optional[str] = None,
        retryable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.status_code = status_code
        self.user_message = user_message or message
        self.retryable = retryable

        super().__init__(self.message)

        logger.error(
            "Team RAG exception raised",
            error_code=self.error_code,
            message=self.message,
            details=self.details,
            status_code=self.status_code
        )


class ExtractionTooShort(TeamRAGException):
    """Extracted text is below the minimum viable length; nothing is stored."""

    def __init__(self, text_length: int, min_length: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Document too short or extraction failed ({text_length} < {min_length} characters)",
            error_code="EXTRACTION_TOO_SHORT",
            details=details or {"text_length": text_length, "min_length": min_length},
            status_code=400
        )


class DimensionMismatch(TeamRAGException):
    """Embedding size differs from the dimension of the stored corpus."""

    def __init__(self, expected: int, actual: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Embedding dimension mismatch: expected {expected}, got {actual}",
            error_code="DIMENSION_MISMATCH",
            details=details or {"expected": expected, "actual": actual},
            status_code=422
        )


class EmbeddingFailed(TeamRAGException):
    """External embedding calls failed or exhausted their retries."""

    def __init__(self, provider: str, attempts: int, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Embedding with {provider} failed after {attempts} attempt(s): {message}",
            error_code="EMBEDDING_FAILED",
            details=details or {"provider": provider, "attempts": attempts},
            status_code=502,
            retryable=True
        )


class StoreWriteFailed(TeamRAGException):
    """Persistence adapter error while replacing a document's chunks."""

    def __init__(self, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Chunk store {operation} failed: {message}",
            error_code="STORE_WRITE_FAILED",
            details=details or {"operation": operation},
            status_code=503,
            retryable=True
        )


class DocumentNotFound(TeamRAGException):
    """Document lookup found nothing."""

    def __init__(self, document_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Document with id '{document_id}' not found",
            error_code="DOCUMENT_NOT_FOUND",
            details=details or {"document_id": document_id},
            status_code=404
        )


class ConfigurationError(TeamRAGException):
    """Configuration and setup errors."""

    def __init__(self, component: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Configuration error in {component}: {message}",
            error_code="CONFIGURATION_ERROR",
            details=details or {"component": component},
            status_code=500
        )


def handle_exception(exc: Exception) -> Dict[str, Any]:
    """Convert any exception to a standardized error response."""
    if isinstance(exc, TeamRAGException):
        return {
            "error": exc.error_code,
            "message": exc.user_message,
            "details": exc.details,
            "status_code": exc.status_code,
            "retryable": exc.retryable
        }

    logger.error("Unexpected exception", error=str(exc), exc_info=True)

    return {
        "error": "INTERNAL_ERROR",
        "message": "An unexpected error occurred",
        "details": {"original_error": str(exc)},
        "status_code": 500,
        "retryable": False
    }


def is_client_error(exc: Exception) -> bool:
    """Check if the exception represents a client error (4xx)."""
    if isinstance(exc, TeamRAGException):
        return 400 <= exc.status_code < 500
    return False
