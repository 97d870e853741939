from ticketsync.schemas.common import MessageResponse, HealthResponse
from ticketsync.schemas.ticket import (
    Ticket, TicketResponse, TicketState, CLOSED_STATES, CORE_FIELDS
)
from ticketsync.schemas.events import ChangeEvent
from ticketsync.schemas.sync import (
    ConflictStrategy, SyncErrorDetail, SyncResult, SyncStatistics, HealthStatus,
    JobOutcome, SyncJobDescriptor, SyncJobUpdate, SyncJob, SchedulerStats,
    SyncTriggerResponse, WorkerStatusResponse
)

__all__ = [
    # Common
    "MessageResponse",
    "HealthResponse",
    # Ticket
    "Ticket",
    "TicketResponse",
    "TicketState",
    "CLOSED_STATES",
    "CORE_FIELDS",
    # Events
    "ChangeEvent",
    # Sync
    "ConflictStrategy",
    "SyncErrorDetail",
    "SyncResult",
    "SyncStatistics",
    "HealthStatus",
    "JobOutcome",
    "SyncJobDescriptor",
    "SyncJobUpdate",
    "SyncJob",
    "SchedulerStats",
    "SyncTriggerResponse",
    "WorkerStatusResponse",
]
