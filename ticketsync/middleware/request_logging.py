"""
Request logging middleware for the admin API.
"""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

QUIET_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log method, path, status and duration of every admin request.

    Headers are never logged; they carry the dashboard password.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        started = time.monotonic()
        client_ip = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            logger.error(
                f"{request.method} {path} from {client_ip} -> "
                f"{type(e).__name__}: {e} ({duration_ms:.2f}ms)"
            )
            raise

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"{request.method} {path} from {client_ip} -> "
            f"{response.status_code} ({duration_ms:.2f}ms)"
        )
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
