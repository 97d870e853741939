"""
Services module for external API clients and business logic.
"""

from ticketsync.services.servicenow import (
    ServiceNowClient,
    ServiceNowAPIError,
    ServiceNowRateLimitError,
    get_servicenow_client
)
from ticketsync.services.freshness import (
    FreshnessPolicy,
    RefreshPriority
)
from ticketsync.services.store import (
    TicketStore,
    UpsertOutcome,
    UnsupportedTableError
)
from ticketsync.services.broadcaster import (
    ChangeBroadcaster,
    LoggingBroadcaster,
    RedisStreamBroadcaster
)
from ticketsync.services.hybrid import HybridTicketService
from ticketsync.services.sync import (
    SyncOptions,
    SyncOrchestrator
)

__all__ = [
    "ServiceNowClient",
    "ServiceNowAPIError",
    "ServiceNowRateLimitError",
    "get_servicenow_client",
    "FreshnessPolicy",
    "RefreshPriority",
    "TicketStore",
    "UpsertOutcome",
    "UnsupportedTableError",
    "ChangeBroadcaster",
    "LoggingBroadcaster",
    "RedisStreamBroadcaster",
    "HybridTicketService",
    "SyncOptions",
    "SyncOrchestrator"
]
