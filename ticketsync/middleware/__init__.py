"""
Middleware module for FastAPI application.
"""

from ticketsync.middleware.request_logging import RequestLoggingMiddleware

__all__ = [
    "RequestLoggingMiddleware",
]
