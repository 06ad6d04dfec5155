"""Error taxonomy and centralized exception handlers.

Domain errors map onto HTTP statuses at the API boundary:

- ``ProviderUnavailable``: every upstream provider failed transiently (503).
- ``NoDataForInstrument``: expected terminal state for funds and other
  non-equity tickers; clients render the ``N/A`` badge (404).
- ``InsufficientHistory``: too few observations for a metric or forecast (422).
- ``CacheMiss``: nothing computed yet, background population scheduled (404).
- ``RetryExhausted``: operator-visible, the entry stopped retrying (500).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .logging import get_logger


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppException:
        """Rebuild an error stored with ``to_dict``; the response body is identical."""
        return AppException(
            message=data.get("message"),
            error_code=data.get("error"),
            status_code=data.get("status"),
            details=data.get("details"),
        )


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class ValidationError(AppException):
    """Validation failed."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code = "VALIDATION_ERROR"
    message = "Validation failed"


class ConflictError(AppException):
    """Resource conflict."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"
    message = "Resource conflict"


class JobError(AppException):
    """Job execution failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "JOB_ERROR"
    message = "Job execution failed"


# =============================================================================
# Risk analytics taxonomy
# =============================================================================


class ProviderUnavailable(AppException):
    """All price providers failed with transient errors. Retryable."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "PROVIDER_UNAVAILABLE"
    message = "Market data providers are temporarily unavailable"

    def __init__(self, ticker: str, errors: dict[str, str] | None = None):
        super().__init__(
            message=f"No provider could serve {ticker} right now",
            details={"ticker": ticker, "providers": errors or {}, "retryable": True},
        )
        self.ticker = ticker


class NoDataForInstrument(AppException):
    """No provider covers the instrument. Not an error to the end user."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NO_DATA_FOR_INSTRUMENT"
    message = "No market data available for this instrument"

    BADGE = "N/A"

    def __init__(self, ticker: str, asset_class: str | None = None):
        details: dict[str, Any] = {"ticker": ticker, "badge": self.BADGE}
        if asset_class:
            details["asset_class"] = asset_class
        super().__init__(
            message=f"No market data available for {ticker}",
            details=details,
        )
        self.ticker = ticker


class InsufficientHistory(AppException):
    """Too few observations for the requested metric or forecast."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    error_code = "INSUFFICIENT_HISTORY"
    message = "Not enough price history"

    def __init__(self, subject: str, required: int, available: int, what: str = "metrics"):
        super().__init__(
            message=(
                f"{subject} has {available} observations, {what} needs at least {required}"
            ),
            details={
                "subject": subject,
                "required": required,
                "available": available,
                "action": "Import more price history or shorten the requested window",
            },
        )
        self.required = required
        self.available = available


class CacheMiss(AppException):
    """No cache entry computed yet. Background population has been requested."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "CACHE_MISS"
    message = "Result not computed yet"

    def __init__(self, key: str, actions: dict[str, str] | None = None):
        super().__init__(
            message=(
                "This result has not been calculated yet. A calculation was "
                "scheduled, retry in a minute or request a forced refresh."
            ),
            details={"cache_key": key, "actions": actions or {}},
        )
        self.key = key


class RetryExhausted(AppException):
    """Entry failed more often than the retry ceiling allows."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "RETRY_EXHAUSTED"
    message = "Calculation failed repeatedly and is no longer retried"

    def __init__(
        self,
        key: str,
        retry_count: int,
        last_error: str | None = None,
        last_error_code: str | None = None,
    ):
        super().__init__(
            details={
                "cache_key": key,
                "retry_count": retry_count,
                "last_error": last_error,
                "last_error_code": last_error_code,
            },
        )
        self.key = key
        self.retry_count = retry_count


class CalculationFailed(AppException):
    """Last calculation failed; a retry is scheduled."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "CALCULATION_FAILED"
    message = "The last calculation failed and will be retried"

    def __init__(self, key: str, retry_count: int, next_retry_at: datetime | None = None):
        super().__init__(
            details={
                "cache_key": key,
                "retry_count": retry_count,
                "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                "retryable": True,
            },
        )
        self.key = key


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "status": 422,
                "details": {"errors": jsonable_encoder(errors)},
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger = get_logger("error")
        logger.exception(
            "Unhandled exception",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )

        from .config import settings

        if settings.debug:
            message = str(exc)
        else:
            message = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )
