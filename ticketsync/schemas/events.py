import json
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from ticketsync.schemas.ticket import Ticket
from ticketsync.timeutils import utcnow


class ChangeEvent(BaseModel):
    """A create/update notification for downstream consumers."""
    table: str
    action: Literal["create", "update"]
    sys_id: str
    number: Optional[str] = None
    state: str
    priority: int
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_ticket(cls, ticket: Ticket, action: str) -> "ChangeEvent":
        return cls(
            table=ticket.table,
            action=action,
            sys_id=ticket.sys_id,
            number=ticket.number,
            state=ticket.state.value,
            priority=ticket.priority,
            payload={
                "short_description": ticket.short_description,
                "assignment_group": ticket.assignment_group,
                "sys_updated_on": ticket.sys_updated_on.isoformat(),
            },
        )

    def to_stream_fields(self) -> Dict[str, str]:
        """Flat string mapping suitable for a Redis stream entry."""
        return {
            "table": self.table,
            "action": self.action,
            "sys_id": self.sys_id,
            "number": self.number or "",
            "state": self.state,
            "priority": str(self.priority),
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.payload, default=str),
        }
