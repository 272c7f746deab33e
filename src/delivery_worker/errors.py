"""Delivery error taxonomy.

Providers classify failures once, at the adapter boundary, by raising or
returning a :class:`DeliveryError` with an explicit ``kind``.  Both the
retry manager and the circuit breaker route on that kind, so they never
disagree about the same error.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    AUTH = "auth"
    VALIDATION = "validation"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


_RETRIABLE = frozenset(
    {
        ErrorKind.CONNECTION,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER,
        ErrorKind.CIRCUIT_OPEN,
    }
)

_COUNTS_AGAINST_CIRCUIT = frozenset(
    {
        ErrorKind.CONNECTION,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.SERVER,
        ErrorKind.UNKNOWN,
    }
)


class DeliveryError(Exception):
    """A classified delivery failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        retry_after: float | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.status = status
        self.retry_after = retry_after
        self.provider = provider

    @classmethod
    def from_http_status(
        cls,
        status: int,
        message: str,
        *,
        code: str | None = None,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> "DeliveryError":
        """Classify a provider HTTP response status."""
        if status in (401, 403):
            kind = ErrorKind.AUTH
        elif status == 429:
            kind = ErrorKind.RATE_LIMIT
        elif status in (408, 504):
            kind = ErrorKind.TIMEOUT
        elif 400 <= status < 500:
            kind = ErrorKind.VALIDATION
        elif status >= 500:
            kind = ErrorKind.SERVER
        else:
            kind = ErrorKind.UNKNOWN
        return cls(
            kind,
            message,
            code=code,
            status=status,
            provider=provider,
            retry_after=retry_after,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "code": self.code,
            "status": self.status,
            "provider": self.provider,
        }

    def __repr__(self) -> str:
        return f"DeliveryError({self.kind.value!r}, {self.message!r})"


class NonRetriableError(Exception):
    """Raised into results when an attempt failed with a non-retriable error."""

    def __init__(self, original: BaseException) -> None:
        super().__init__(f"Non-retriable error: {original}")
        self.original = original
        self.__cause__ = original


class RetryTimeoutError(Exception):
    """The retry sequence ran out of its global time budget."""

    def __init__(self, attempts: int, elapsed_ms: float) -> None:
        super().__init__(
            f"Retry timeout after {attempts} attempts ({elapsed_ms:.0f}ms)"
        )
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms


def classify(exc: BaseException) -> ErrorKind:
    """Return the :class:`ErrorKind` for any exception."""
    if isinstance(exc, NonRetriableError):
        return classify(exc.original)
    if isinstance(exc, DeliveryError):
        return exc.kind
    if isinstance(exc, RetryTimeoutError | TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError | OSError):
        return ErrorKind.CONNECTION
    if isinstance(exc, ValueError):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def is_retriable(exc: BaseException) -> bool:
    """Default retry predicate: transient provider and transport errors."""
    return classify(exc) in _RETRIABLE


def counts_as_failure(exc: BaseException) -> bool:
    """Default breaker predicate: errors that indicate a provider outage.

    Auth and validation errors are caller-side problems and circuit-open
    rejections are the breaker's own, so none of those count.
    """
    return classify(exc) in _COUNTS_AGAINST_CIRCUIT


def describe(exc: BaseException) -> str:
    """Human-readable error text for persistence and events."""
    if isinstance(exc, NonRetriableError):
        return describe(exc.original)
    return str(exc) or exc.__class__.__name__
