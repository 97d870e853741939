"""
ServiceNow Ticket Sync - Main FastAPI Application
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ticketsync.api.router import api_router
from ticketsync.config import settings
from ticketsync.database import AsyncSessionLocal, close_db, init_db
from ticketsync.middleware import RequestLoggingMiddleware
from ticketsync.runtime import SyncRuntime
from ticketsync.schemas import HealthResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "servicenow-ticket-sync"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.

    Handles:
    - Building the sync runtime and loading scheduled jobs
    - Starting the scheduler tick
    - Draining background work and closing connections on shutdown
    """
    logger.info("Starting up ServiceNow Ticket Sync...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Synchronized tables: {settings.sync_tables_list}")

    # Tables are created by Alembic migrations (alembic upgrade head);
    # local SQLite runs create them directly
    if settings.DATABASE_URL.startswith("sqlite"):
        await init_db()

    runtime = SyncRuntime.from_settings(settings, AsyncSessionLocal)
    await runtime.start()
    app.state.runtime = runtime
    logger.info("Startup complete")

    yield

    logger.info("Shutting down ServiceNow Ticket Sync...")
    await runtime.shutdown()
    app.state.runtime = None
    await close_db()
    logger.info("Shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create the FastAPI application; tests pass use_lifespan=False and set app.state.runtime."""
    app = FastAPI(
        title="ServiceNow Ticket Sync",
        description="Hybrid ServiceNow ticket cache with scheduled synchronization",
        version=VERSION,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(RequestLoggingMiddleware)

    cors_origins = settings.cors_origins_list
    if settings.ENVIRONMENT == "production" and "*" in cors_origins:
        logger.warning(
            "WARNING: CORS is set to allow all origins (*) in production. "
            "Set CORS_ORIGINS to specific origins."
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Dashboard-Password"],
        max_age=600,  # Cache preflight requests for 10 minutes
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(status="healthy", service=SERVICE_NAME, version=VERSION)

    app.include_router(api_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
