"""Error taxonomy for the tracking backend and the handlers that render it.

Every failure leaves the API as ``{"error": <message>}`` with a status code
the caller can act on: 4xx means "fix the request", 5xx means "retry later".
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class TrackerError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(TrackerError):
    """Malformed or incomplete input. Nothing was written."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(TrackerError):
    """No verified principal (401), or a principal that may not act (403)."""

    status_code = status.HTTP_401_UNAUTHORIZED

    @classmethod
    def forbidden(cls, message: str) -> "AuthorizationError":
        return cls(message, status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(TrackerError):
    """Missing resource, or one the caller does not own."""

    status_code = status.HTTP_404_NOT_FOUND


class StorageError(TrackerError):
    """Transaction or connection failure. The whole operation was rolled back."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class IdentityUnavailableError(TrackerError):
    """The Service Hub could not be reached to verify a credential."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": details},
    )


def install_exception_handlers(app):
    app.add_exception_handler(TrackerError, tracker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
