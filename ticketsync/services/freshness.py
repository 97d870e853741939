"""
Freshness policy for cached tickets.

Decides how long a cached ticket may be served before it is re-fetched
from ServiceNow, and how urgently a stale ticket should be refreshed.
Both decisions are pure functions of the ticket and the current time;
nothing here is persisted.

Check order matters. ``ttl`` looks at the closed state before priority,
while ``refresh_priority`` looks at priority before the closed state, so
a closed priority-1 ticket gets the closed TTL but a high refresh
priority.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from ticketsync.schemas.ticket import Ticket
from ticketsync.timeutils import as_utc, utcnow

CLOSED_TTL = timedelta(hours=1)
CRITICAL_TTL = timedelta(minutes=1)
HIGH_TTL = timedelta(minutes=2)
DEFAULT_TTL = timedelta(minutes=5)


class RefreshPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FreshnessPolicy:
    """TTL rules keyed on ticket state and priority."""

    def ttl(self, ticket: Ticket) -> timedelta:
        if ticket.is_closed:
            return CLOSED_TTL
        if ticket.priority == 1:
            return CRITICAL_TTL
        if ticket.priority == 2:
            return HIGH_TTL
        return DEFAULT_TTL

    def should_refresh(self, ticket: Ticket, now: Optional[datetime] = None) -> bool:
        """True once the ticket's age since its last update exceeds its TTL."""
        now = as_utc(now) if now else utcnow()
        return now - as_utc(ticket.sys_updated_on) > self.ttl(ticket)

    def refresh_priority(self, ticket: Ticket) -> RefreshPriority:
        if ticket.priority == 1:
            return RefreshPriority.HIGH
        if ticket.priority == 2:
            return RefreshPriority.MEDIUM
        if ticket.is_closed:
            return RefreshPriority.LOW
        return RefreshPriority.MEDIUM
