"""
Error taxonomy shared by the batch pipeline, the embedding client and the
recommendation engine.
"""

from typing import Optional


class CaseRecallError(Exception):
    """Base class for all classified failures."""

    def __init__(self, message: str, search_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.search_id = search_id


class ValidationError(CaseRecallError):
    """Empty/invalid query or malformed batch parameters. Never retried."""


class EmbeddingError(CaseRecallError):
    """Base class for embedding provider failures."""


class EmbeddingTransientError(EmbeddingError):
    """Provider timeout or unavailability; eligible for retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingFatalError(EmbeddingError):
    """Auth, quota or malformed request/response; surfaced without retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingExhaustedError(EmbeddingError):
    """Transient failures persisted through every allowed attempt."""

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class SearchError(CaseRecallError):
    """Query path failure: embedding, dimension mismatch, index or storage read."""


class PersistenceError(CaseRecallError):
    """Upsert/write failure."""


class DimensionMismatchError(PersistenceError):
    """Vector length differs from the dimension fixed for its embedding model."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension {actual} does not match expected dimension {expected}")
        self.expected = expected
        self.actual = actual


class OperationTimeoutError(CaseRecallError):
    """An operation exceeded its deadline."""

    def __init__(self, message: str, search_id: Optional[str] = None, partial_result=None):
        super().__init__(message, search_id=search_id)
        self.partial_result = partial_result


class OperationCancelledError(CaseRecallError):
    """The caller cancelled the operation; no partial results are returned."""
