from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.services.processor.exceptions import BillingError, ErrorKind

KIND_TO_STATUS: dict[ErrorKind, int] = {
    ErrorKind.PRECONDITION: status.HTTP_412_PRECONDITION_FAILED,
    ErrorKind.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.INTERNAL: status.HTTP_502_BAD_GATEWAY,
}


class ValidationError(HTTPException):
    """Raised when request validation fails."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message,
        )


class UnauthenticatedError(HTTPException):
    """Raised when the caller's identity headers are missing."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
        )


class BillingHTTPError(HTTPException):
    """HTTP rendering of a BillingError."""

    def __init__(self, err: BillingError):
        super().__init__(
            status_code=KIND_TO_STATUS.get(err.kind, status.HTTP_502_BAD_GATEWAY),
            detail={
                "code": err.kind.value,
                "message": err.message,
                "retryable": err.retryable,
            },
        )


def billing_error_to_http(err: BillingError) -> BillingHTTPError:
    return BillingHTTPError(err)


async def billing_error_handler(_request: Request, exc: BillingError) -> JSONResponse:
    """Exception handler registered on the app for BillingError."""
    http_error = billing_error_to_http(exc)
    headers = {"Retry-After": "1"} if exc.kind == ErrorKind.RATE_LIMITED else None
    return JSONResponse(
        status_code=http_error.status_code,
        content={"detail": http_error.detail},
        headers=headers,
    )
