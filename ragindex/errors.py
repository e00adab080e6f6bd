"""
Error taxonomy
--------------
Every failure surfaced by the indexing and retrieval core maps to one of
these classes.  The retry policy (`ragindex.utils.retry`) only ever retries
errors whose `retryable` attribute is True, so the class chosen at the raise
site decides whether an operation is retried with backoff or fails fast.

  ValidationError        bad size / format, fail fast
  DocumentNotFoundError  unknown document id (a ValidationError)
  ConflictError          lost a reference-count race, retried once by callers
  ExternalServiceError   provider / store failure, retryable unless flagged
  ServiceTimeoutError    timed out talking to a collaborator, retryable
  QuotaExceededError     tenant storage ceiling reached, fail fast
  CorruptionError        hash mismatch or malformed stored vector, fatal
"""
from __future__ import annotations


class RagIndexError(Exception):
    """Base class for all errors raised by ragindex."""

    retryable: bool = False


class ValidationError(RagIndexError):
    pass


class DocumentNotFoundError(ValidationError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class ConflictError(RagIndexError):
    pass


class ExternalServiceError(RagIndexError):
    def __init__(
        self,
        message: str,
        service: str = "external",
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"[{service}] {message}")
        self.service = service
        self.retryable = retryable
        self.status_code = status_code


class ServiceTimeoutError(ExternalServiceError):
    def __init__(self, message: str, service: str = "external") -> None:
        super().__init__(message, service=service, retryable=True)


class QuotaExceededError(RagIndexError):
    def __init__(self, organization_id: str, requested: int, used: int, quota: int) -> None:
        super().__init__(
            f"Storage quota exceeded for organization {organization_id}: "
            f"requested {requested} bytes, used {used} of {quota}"
        )
        self.organization_id = organization_id
        self.requested = requested
        self.used = used
        self.quota = quota


class CorruptionError(RagIndexError):
    pass


def is_retryable(exc: BaseException) -> bool:
    """True when `exc` is a ragindex error flagged as safe to retry."""
    return isinstance(exc, RagIndexError) and exc.retryable
