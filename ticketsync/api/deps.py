"""
API dependency functions for runtime components and authentication.
"""

import secrets

from fastapi import Header, HTTPException, Request, status

from ticketsync.config import settings
from ticketsync.runtime import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    """
    Runtime dependency.

    The runtime is built once in the application lifespan and kept on
    ``app.state``.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync runtime not initialized"
        )
    return runtime


async def verify_password(
    x_dashboard_password: str = Header(..., alias="X-Dashboard-Password")
) -> bool:
    """
    Simple password authentication for the admin API.

    Verifies the dashboard password from the X-Dashboard-Password header
    using constant-time comparison to prevent timing attacks.

    Raises:
        HTTPException: 401 if password is invalid
    """
    if not secrets.compare_digest(x_dashboard_password, settings.DASHBOARD_PASSWORD):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid dashboard password"
        )
    return True
