import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and timing of every request."""

    # Paths to exclude from logging
    EXCLUDED_PATHS = {"/health", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error("%s %s failed after %.2fms: %s", request.method, request.url.path, duration_ms, e)
            raise

        duration_ms = (time.time() - start_time) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(level, "%s %s completed %s in %.2fms", request.method, request.url.path,
                   response.status_code, duration_ms)
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
