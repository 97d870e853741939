"""
API endpoints module.
"""

from ticketsync.api import scheduler, sync, tickets
from ticketsync.api.router import api_router

__all__ = [
    "scheduler",
    "sync",
    "tickets",
    "api_router",
]
