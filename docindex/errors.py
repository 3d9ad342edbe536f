"""
Exception hierarchy for the document indexing pipeline.

Every error carries a human-readable message plus a details dict for logs.
Transient infrastructure errors expose `retryable` and an optional
`retry_after` hint; content and configuration errors are never retried.
"""

from typing import Any, Dict, Iterable, List, Optional


class DocIndexError(Exception):
    """Base exception for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize base exception with message and optional context.

        Args:
            message: Human-readable error message
            details: Optional dictionary of additional context for debugging
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation including details."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DocIndexError):
    """Raised before any work starts when options are invalid."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class ExtractionError(DocIndexError):
    """Raised when the content extractor cannot produce content for a document."""

    def __init__(
        self,
        message: str,
        document_id: Optional[str] = None,
        content_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if document_id:
            details["document_id"] = document_id
        if content_type:
            details["content_type"] = content_type
        super().__init__(message, details)


class ChunkingError(DocIndexError):
    """Raised on an internal chunking inconsistency (a defect, not bad input)."""

    pass


class RateLimitExceeded(DocIndexError):
    """Raised by a non-blocking admission attempt; callers wait and try again."""

    retryable = True

    def __init__(self, retry_after: float, details: Optional[Dict[str, Any]] = None) -> None:
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(f"Rate limit window exhausted, retry in {self.retry_after:.3f}s", details)


class CircuitOpenError(DocIndexError):
    """Raised instead of calling a provider while its circuit is open."""

    retryable = True

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(
            f"Circuit '{name}' is open",
            {"circuit": name, "retry_after": round(self.retry_after, 3)},
        )


class ProviderError(DocIndexError):
    """Error reported by the embedding provider.

    Attributes:
        status: HTTP status code when known.
        retryable: Whether the failure is transient (429, 5xx, timeout).
        retry_after: Provider-suggested delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status is not None:
            details["status"] = status
        self.status = status
        self.retryable = is_retryable_status(status) if retryable is None else retryable
        self.retry_after = retry_after
        super().__init__(message, details)


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its timeout; always treated as transient."""

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        details = {"timeout": timeout} if timeout is not None else None
        super().__init__(message, status=None, retryable=True, details=details)


class EmbeddingError(DocIndexError):
    """Base exception for embedding stage failures."""

    pass


class EmbeddingDimensionMismatch(EmbeddingError):
    """A provider vector does not have the model's declared dimensionality."""

    def __init__(self, expected: int, actual: int, chunk_id: Optional[str] = None) -> None:
        self.expected = expected
        self.actual = actual
        self.chunk_id = chunk_id
        details: Dict[str, Any] = {"expected": expected, "actual": actual}
        if chunk_id:
            details["chunk_id"] = chunk_id
        super().__init__("Embedding dimension mismatch", details)


class PartialEmbeddingFailure(EmbeddingError):
    """Some chunks could not be embedded.

    Successfully embedded chunks keep their vectors; callers can retry only
    `failed_chunk_ids`.
    """

    def __init__(
        self,
        failed_chunk_ids: Iterable[str],
        causes: Iterable[BaseException],
        embedded_chunk_ids: Iterable[str] = (),
    ) -> None:
        self.failed_chunk_ids: List[str] = list(failed_chunk_ids)
        self.causes: List[BaseException] = list(causes)
        self.embedded_chunk_ids: List[str] = list(embedded_chunk_ids)
        kinds = sorted({type(c).__name__ for c in self.causes})
        super().__init__(
            f"{len(self.failed_chunk_ids)} chunk(s) could not be embedded",
            {"failed": len(self.failed_chunk_ids), "embedded": len(self.embedded_chunk_ids), "causes": kinds},
        )

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return bool(self.causes) and all(getattr(c, "retryable", False) for c in self.causes)

    @property
    def retry_after(self) -> Optional[float]:
        hints = [c.retry_after for c in self.causes if getattr(c, "retry_after", None) is not None]
        return max(hints) if hints else None


class JobCancelledError(DocIndexError):
    """Processing of a document was cancelled by an external caller."""

    def __init__(self, document_id: str, reason: str = "cancelled") -> None:
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Processing cancelled: {reason}", {"document_id": document_id})


class JobStateError(DocIndexError):
    """An illegal processing job transition was attempted."""

    pass


class InvalidQueryError(DocIndexError):
    """Raised synchronously to search callers for unusable queries."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, {"field": field} if field else None)


class StoreError(DocIndexError):
    """Raised when the persistence store rejects an operation."""

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details)


def is_retryable_status(status: Optional[int]) -> bool:
    """Classify an HTTP status: 408, 409, 429 and 5xx are transient."""
    if status is None:
        return True
    return status in (408, 409, 429) or status >= 500
