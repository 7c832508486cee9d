"""Error taxonomy shared by the processor adapter and the billing services."""

from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced to callers."""

    PRECONDITION = "PRECONDITION"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"


STATUS_TO_KIND: dict[int, ErrorKind] = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    429: ErrorKind.RATE_LIMITED,
    408: ErrorKind.TIMEOUT,
    504: ErrorKind.TIMEOUT,
}

# Kinds where the outcome of a write is unknown; only safe to retry with an op_id
TRANSIENT_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.INTERNAL, ErrorKind.RATE_LIMITED})


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status to an error kind, defaulting to INTERNAL."""
    return STATUS_TO_KIND.get(status_code, ErrorKind.INTERNAL)


class BillingError(Exception):
    """Base error for everything the billing core raises."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        self.kind = kind
        self.message = message
        self.status_code = status_code  # Processor HTTP status, when there was one
        self.retryable = retryable
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def for_operation(self, label: str, op_id: str | None = None) -> "BillingError":
        """
        Re-label this error for the caller of a named operation.

        The message gets a "Failed to <label>: " prefix for traceability.
        Transient failures are only marked retryable when the caller supplied an
        idempotency token; a blind retry could apply a write twice. Rate limits
        are always retryable after backing off.
        """
        retryable = self.kind == ErrorKind.RATE_LIMITED or (
            self.is_transient and op_id is not None
        )
        return type(self)(
            self.kind,
            f"Failed to {label}: {self.message}",
            status_code=self.status_code,
            retryable=retryable,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, message={self.message!r})"


class ProcessorError(BillingError):
    """Error returned by (or while talking to) the payment processor."""


class PreconditionError(BillingError):
    """A local precondition failed; the processor was not called."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(ErrorKind.PRECONDITION, message, status_code, retryable=False)

    def for_operation(self, label: str, op_id: str | None = None) -> "BillingError":
        # Precondition messages are already user-facing; never retryable
        return self


class ProcessorConfigurationError(PreconditionError):
    """The processor credential is missing. Fatal; callers must not retry."""

    def __init__(self, message: str = "Commerce API key is not configured"):
        super().__init__(message)
