"""Error taxonomy for job processing and the retry classifier."""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    """How a failure should be treated by the dispatcher."""

    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ApiErrorType(str, Enum):
    """Provider error categories derived from HTTP status codes."""

    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    CAPACITY_ERROR = "capacity_error"
    SERVER_ERROR = "server_error"
    UNAVAILABLE = "unavailable"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


RETRYABLE_API_ERROR_TYPES = frozenset(
    {
        ApiErrorType.NETWORK_ERROR,
        ApiErrorType.TIMEOUT_ERROR,
        ApiErrorType.RATE_LIMIT_ERROR,
        ApiErrorType.CAPACITY_ERROR,
        ApiErrorType.SERVER_ERROR,
        ApiErrorType.UNAVAILABLE,
    }
)

# Matched case-insensitively against untyped error messages.
RETRYABLE_KEYWORDS = (
    "timeout",
    "network",
    "socket",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "rate limit",
    "too many requests",
    "429",
    "503",
    "temporarily unavailable",
    "retry",
    "connection",
)

# Exceptions that signal a defect rather than a flaky provider.
NON_RETRYABLE_EXCEPTIONS = (
    MemoryError,
    RecursionError,
    NotImplementedError,
    AssertionError,
    TypeError,
    AttributeError,
    NameError,
    ImportError,
)

TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
)


class JobError(Exception):
    """Base class for errors that carry an explicit ErrorKind."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class ConfigurationError(JobError):
    """No processor is registered for a job type, or a processor is misconfigured."""

    kind = ErrorKind.CONFIGURATION


class ProviderError(JobError):
    """Failure reported by an external AI provider."""

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
        error_type: ApiErrorType = ApiErrorType.UNKNOWN,
    ) -> None:
        super().__init__(message, kind)
        self.status_code = status_code
        self.error_type = error_type


class TransientProviderError(ProviderError):
    """Network, timeout, rate-limit or 5xx-class provider failure."""

    kind = ErrorKind.TRANSIENT


class PermanentProviderError(ProviderError):
    """Provider failure that will not succeed on retry (auth, validation)."""

    kind = ErrorKind.PERMANENT


def map_status_code_to_error_type(status_code: int) -> ApiErrorType:
    """Map an HTTP status code to a provider error category."""
    if status_code in (408, 504):
        return ApiErrorType.TIMEOUT_ERROR
    if status_code == 429:
        return ApiErrorType.RATE_LIMIT_ERROR
    if status_code == 529:
        return ApiErrorType.CAPACITY_ERROR
    if status_code in (502, 503):
        return ApiErrorType.UNAVAILABLE
    if status_code >= 500:
        return ApiErrorType.SERVER_ERROR
    if status_code in (401, 403):
        return ApiErrorType.AUTH_ERROR
    if status_code == 404:
        return ApiErrorType.NOT_FOUND
    if status_code in (400, 413, 422):
        return ApiErrorType.VALIDATION_ERROR
    if status_code == 0:
        return ApiErrorType.NETWORK_ERROR
    return ApiErrorType.UNKNOWN


def provider_error_from_status(status_code: int, message: str) -> ProviderError:
    """Build a typed provider error for an HTTP error response."""
    error_type = map_status_code_to_error_type(status_code)
    if error_type in RETRYABLE_API_ERROR_TYPES:
        return TransientProviderError(
            message, status_code=status_code, error_type=error_type
        )
    return PermanentProviderError(
        message, status_code=status_code, error_type=error_type
    )


def matches_retryable_keyword(message: Optional[str]) -> bool:
    """Return True if an untyped error message looks transient."""
    if not message:
        return False
    lowered = message.lower()
    return any(keyword.lower() in lowered for keyword in RETRYABLE_KEYWORDS)


def classify_error(error: Optional[BaseException]) -> ErrorKind:
    """Classify an error as transient, permanent or configuration.

    Typed errors are trusted first. Built-in exception classes are checked
    next, and the keyword list is only consulted for untyped errors coming
    from code that cannot raise JobError itself.
    """
    if error is None:
        return ErrorKind.PERMANENT

    if isinstance(error, JobError):
        return error.kind

    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return ErrorKind.PERMANENT

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return ErrorKind.TRANSIENT

    if matches_retryable_keyword(str(error)):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


def is_retryable(error: Optional[BaseException]) -> bool:
    return classify_error(error) is ErrorKind.TRANSIENT
