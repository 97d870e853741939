from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ticketsync.timeutils import as_utc, parse_servicenow_datetime

# Fields promoted to columns. Everything else lands in Ticket.extra, as do
# the raw {value, display_value} pairs of these fields
CORE_FIELDS = frozenset({
    "sys_id",
    "number",
    "state",
    "priority",
    "short_description",
    "assignment_group",
    "sys_created_on",
    "sys_updated_on",
})

LOWEST_PRIORITY = 5


class TicketState(str, Enum):
    """ServiceNow task lifecycle states (numeric codes as sent by the Table API)."""
    PENDING = "-5"
    NEW = "1"
    IN_PROGRESS = "2"
    ON_HOLD = "3"
    CLOSED_INCOMPLETE = "4"
    RESOLVED = "6"
    CLOSED = "7"
    CANCELED = "8"


# Terminal states that get the long cache TTL
CLOSED_STATES = frozenset({TicketState.RESOLVED, TicketState.CLOSED})


def field_value(raw: Any) -> Any:
    """Extract the raw value of a field that may be a {value, display_value} pair."""
    if isinstance(raw, dict):
        return raw.get("value")
    return raw


def parse_priority(raw: Any) -> int:
    """
    Parse a ServiceNow priority into an ordinal 1-5.

    Accepts "2", 2 or display strings like "2 - High". Missing or
    out-of-range values fall back to the lowest priority.
    """
    value = field_value(raw)
    if value is None or value == "":
        return LOWEST_PRIORITY
    try:
        priority = int(str(value).split("-")[0].strip())
    except ValueError:
        return LOWEST_PRIORITY
    if 1 <= priority <= 5:
        return priority
    return LOWEST_PRIORITY


def parse_reference(raw: Any) -> Optional[Dict[str, Any]]:
    """Normalize a reference field (sys_id string or link object) to a dict."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        if not raw.get("value") and not raw.get("display_value"):
            return None
        return dict(raw)
    return {"value": str(raw)}


class Ticket(BaseModel):
    """
    Normalized ticket: structured core plus an open extension map.

    ``source`` and ``stale`` describe where a read came from and are
    never persisted.
    """
    table: str
    sys_id: str
    number: Optional[str] = None
    state: TicketState
    priority: int = Field(LOWEST_PRIORITY, ge=1, le=5)
    short_description: Optional[str] = None
    assignment_group: Optional[Dict[str, Any]] = None
    sys_created_on: Optional[datetime] = None
    sys_updated_on: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)
    sla: Optional[List[Dict[str, Any]]] = None
    notes: Optional[List[Dict[str, Any]]] = None

    source: Literal["cache", "servicenow"] = "servicenow"
    stale: bool = False

    @property
    def key(self) -> tuple[str, str]:
        """Globally unique identity of the ticket."""
        return (self.table, self.sys_id)

    @property
    def is_closed(self) -> bool:
        return self.state in CLOSED_STATES

    @classmethod
    def from_servicenow(cls, table: str, record: Dict[str, Any]) -> "Ticket":
        """
        Build a ticket from a raw Table API record.

        Raises:
            ValueError: If the record has no sys_id, no sys_updated_on,
                        or an unknown state code
        """
        sys_id = field_value(record.get("sys_id"))
        if not sys_id:
            raise ValueError(f"Record from {table} has no sys_id")

        updated_on = parse_servicenow_datetime(field_value(record.get("sys_updated_on")))
        if updated_on is None:
            raise ValueError(f"Record {table}/{sys_id} has no sys_updated_on")

        return cls(
            table=table,
            sys_id=str(sys_id),
            number=field_value(record.get("number")),
            state=TicketState(str(field_value(record.get("state")))),
            priority=parse_priority(record.get("priority")),
            short_description=field_value(record.get("short_description")),
            assignment_group=parse_reference(record.get("assignment_group")),
            sys_created_on=parse_servicenow_datetime(field_value(record.get("sys_created_on"))),
            sys_updated_on=updated_on,
            extra={
                k: v for k, v in record.items()
                if k not in CORE_FIELDS or isinstance(v, dict)
            },
        )

    @classmethod
    def from_record(cls, row) -> "Ticket":
        """Build a ticket from a stored TicketRecord row."""
        return cls(
            table=row.table_name,
            sys_id=row.sys_id,
            number=row.number,
            state=TicketState(row.state),
            priority=row.priority,
            short_description=row.short_description,
            assignment_group=row.assignment_group,
            sys_created_on=as_utc(row.sys_created_on),
            sys_updated_on=as_utc(row.sys_updated_on),
            extra=dict(row.extra or {}),
            sla=row.sla,
            notes=row.notes,
            source="cache",
        )

    def to_columns(self) -> Dict[str, Any]:
        """Column values for the tickets table (sub-resources excluded)."""
        return {
            "table_name": self.table,
            "sys_id": self.sys_id,
            "number": self.number,
            "state": self.state.value,
            "priority": self.priority,
            "short_description": self.short_description,
            "assignment_group": self.assignment_group,
            "sys_created_on": self.sys_created_on,
            "sys_updated_on": self.sys_updated_on,
            "extra": self.extra,
        }


class TicketResponse(BaseModel):
    """Ticket as returned by the admin API."""
    table: str
    sys_id: str
    number: Optional[str] = None
    state: str
    priority: int
    short_description: Optional[str] = None
    assignment_group: Optional[Dict[str, Any]] = None
    sys_created_on: Optional[datetime] = None
    sys_updated_on: datetime
    extra: Dict[str, Any] = {}
    sla: Optional[List[Dict[str, Any]]] = None
    notes: Optional[List[Dict[str, Any]]] = None
    source: str
    stale: bool
