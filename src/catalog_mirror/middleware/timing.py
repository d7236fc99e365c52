"""Request timing and context middleware."""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from catalog_mirror.config import get_settings

logger = structlog.get_logger()


class TimingMiddleware(BaseHTTPMiddleware):
    """Adds X-Response-Time-Ms and binds the tenant to the request's log context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        organization_id = request.headers.get(get_settings().organization_header)
        structlog.contextvars.clear_contextvars()
        if organization_id:
            structlog.contextvars.bind_contextvars(organization_id=organization_id)

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        response.headers["X-Response-Time-Ms"] = str(duration_ms)
        logger.debug(
            "request_completed",
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response
