"""
api/errors.py -- The one place a Failure becomes an HTTP response.

Every error leaves the API in the same envelope:

    {"error": "<ERROR_KIND>", "message": "<text>", "retry_after": <seconds|null>}

RATE_LIMITED responses also carry a Retry-After header. Messages come from
core.errors and never contain the rejected input.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from api.models import ErrorResponse
from core.errors import ErrorKind, Failure

logger = logging.getLogger("codeguard.api")

_HTTP_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_FORMAT,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.NOT_FOUND,
    409: ErrorKind.ALREADY_RUNNING,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.DEPENDENCY_UNAVAILABLE,
}


def failure_response(failure: Failure) -> JSONResponse:
    response = JSONResponse(
        status_code=failure.status_code,
        content=ErrorResponse(
            error=failure.kind.value,
            message=failure.message,
            retry_after=failure.retry_after,
        ).model_dump(),
    )
    if failure.kind is ErrorKind.RATE_LIMITED and failure.retry_after:
        response.headers["Retry-After"] = str(failure.retry_after)
    return response


class FailureError(Exception):
    """Raised from a FastAPI dependency to short-circuit a request with a Failure."""

    def __init__(self, failure: Failure) -> None:
        super().__init__(failure.kind.value)
        self.failure = failure


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def failure_error_handler(request: Request, exc: FailureError) -> JSONResponse:
    return failure_response(exc.failure)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Map slowapi's per-IP limit (login) onto the RATE_LIMITED envelope.

    slowapi stores the window on the exception; fall back to 60 seconds.
    """
    retry_after = int(getattr(exc, "retry_after", 60) or 60)
    return failure_response(Failure(ErrorKind.RATE_LIMITED, retry_after=retry_after))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations are INVALID_FORMAT. Only field locations are reported, never input values."""
    fields = sorted({".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()})
    message = f"Invalid request: {', '.join(f for f in fields if f)}." if any(fields) else "Invalid request."
    return failure_response(Failure(ErrorKind.INVALID_FORMAT, message))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    kind = _HTTP_KINDS.get(exc.status_code, ErrorKind.INTERNAL)
    response = failure_response(Failure(kind))
    # Keep the framework's status (e.g. 405) even when the kind is shared.
    response.status_code = exc.status_code
    return response


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return failure_response(Failure(ErrorKind.INTERNAL))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FailureError, failure_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
