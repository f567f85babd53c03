"""
Error taxonomy for the VAT document extraction pipeline.

Errors are grouped by how the pipeline reacts to them:

1. RetryableError - transient service failures, retried with backoff
2. TerminalRequestError - the request itself cannot succeed, never retried
3. GovernorError - the request governor refused admission (queue full, circuit open)

Parse-degraded responses and reconciliation ambiguity are not errors; they are
carried as validation flags on the result.
"""

from enum import Enum
from typing import Optional


class VatDocError(Exception):
    """Base class for all pipeline errors."""

    code = "VATDOC_ERROR"
    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class RetryableError(VatDocError):
    """Transient failure of the external service."""

    code = "RETRYABLE"
    retryable = True


class ServiceTimeoutError(RetryableError):
    code = "TIMEOUT"


class ServerError(RetryableError):
    code = "SERVER_ERROR"


class RateLimitError(RetryableError):
    code = "RATE_LIMITED"


class EmptyResponseError(RetryableError):
    code = "EMPTY_RESPONSE"


class TerminalRequestError(VatDocError):
    """Failure that retrying cannot fix."""

    code = "TERMINAL"


class AuthenticationError(TerminalRequestError):
    code = "AUTH_FAILED"


class QuotaExceededError(TerminalRequestError):
    code = "QUOTA_EXCEEDED"


class MalformedRequestError(TerminalRequestError):
    code = "MALFORMED_REQUEST"


class UnsupportedMediaTypeError(TerminalRequestError):
    code = "UNSUPPORTED_MEDIA_TYPE"


class ReadFailure(str, Enum):
    """Reasons the text-extraction collaborator can fail."""

    ENCRYPTED = "ENCRYPTED"
    CORRUPTED = "CORRUPTED"
    UNSUPPORTED = "UNSUPPORTED"
    EMPTY = "EMPTY"


class DocumentReadError(TerminalRequestError):
    """The document bytes could not be turned into text or an image payload."""

    code = "DOCUMENT_READ_FAILED"

    def __init__(self, message: str, reason: ReadFailure):
        super().__init__(message)
        self.reason = reason


class GovernorError(VatDocError):
    """The request governor refused to admit a request."""

    code = "GOVERNOR_REFUSED"


class QueueFullError(GovernorError):
    code = "QUEUE_FULL"


class CircuitOpenError(GovernorError):
    code = "CIRCUIT_OPEN"

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after
