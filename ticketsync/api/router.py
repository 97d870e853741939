"""
Main API router aggregating all endpoint modules.
"""

from fastapi import APIRouter

from ticketsync.api import scheduler, sync, tickets

# Create main API router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(tickets.router)
api_router.include_router(sync.router)
api_router.include_router(scheduler.router)
