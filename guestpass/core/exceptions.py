import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppException(Exception):
    def __init__(self, message: str, status_code: int = 400, code: str | None = None):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class StructuralError(AppException):
    """Malformed credential or request input. Never partially processed."""

    def __init__(self, message: str, code: str = "structural-error", details: list[dict] | None = None):
        super().__init__(message, status_code=400, code=code)
        self.details = details or []


class AuthorizationError(AppException):
    """Requester identity or role failure.

    401 when the requester should retry with credentials, 403 when retrying
    as the same requester cannot succeed.
    """

    def __init__(self, message: str, code: str, status_code: int = 401):
        super().__init__(message, status_code=status_code, code=code)


class ConsistencyError(AppException):
    """The visit/invitation commit could not be applied as one unit."""

    def __init__(self, message: str = "Check-in could not be recorded. Please retry.", code: str = "commit-failed"):
        super().__init__(message, status_code=409, code=code)


class DownstreamError(Exception):
    """Notification or reward dispatch failure. Logged, never surfaced as an admission failure."""


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def _app_exception_handler(_: Request, exc: AppException):
        content = {"message": exc.message}
        if exc.code:
            content["code"] = exc.code
        if isinstance(exc, StructuralError) and exc.details:
            content["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(_: Request, exc: Exception):
        logger.exception("unhandled error: %s", exc.__class__.__name__)
        return JSONResponse(
            status_code=500,
            content={"message": "Internal server error", "detail": str(exc)},
        )
