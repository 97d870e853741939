"""
Database models for the ticket sync engine.

This module exports all SQLAlchemy models and the closed set of
ServiceNow tables the engine caches.
"""

from ticketsync.models.ticket import TicketRecord
from ticketsync.models.sync_job import SyncJobRecord

# Ticket tables the engine knows how to cache
SUPPORTED_TABLES = ("incident", "change_task", "sc_task")

__all__ = [
    "TicketRecord",
    "SyncJobRecord",
    "SUPPORTED_TABLES",
]
