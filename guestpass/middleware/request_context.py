import logging
import uuid
from time import perf_counter

from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        logger.info(
            "request method=%s path=%s status=%s request_id=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            request.state.request_id,
            (perf_counter() - started) * 1000,
        )
        return response
