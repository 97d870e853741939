"""
Ticket read endpoints backed by the hybrid read path.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from ticketsync.api.deps import get_runtime, verify_password
from ticketsync.runtime import SyncRuntime
from ticketsync.schemas import TicketResponse
from ticketsync.services.store import UnsupportedTableError

router = APIRouter(prefix="/tickets", tags=["tickets"])


@router.get("/{table}/{sys_id}", response_model=TicketResponse)
async def get_ticket(
    table: str,
    sys_id: str,
    force_upstream: bool = Query(False, description="Skip the store and read from ServiceNow"),
    force_cache: bool = Query(False, description="Return the stored copy without calling ServiceNow"),
    include_sla: bool = Query(False, description="Fetch SLA timers on an upstream read"),
    include_notes: bool = Query(False, description="Fetch journal notes on an upstream read"),
    runtime: SyncRuntime = Depends(get_runtime),
    _: bool = Depends(verify_password)
):
    """
    Get a single ticket.

    Served from the store while fresh, otherwise from ServiceNow. When
    ServiceNow is unavailable a stored copy is returned with ``stale: true``.
    """
    if force_upstream and force_cache:
        raise HTTPException(
            status_code=400,
            detail="force_upstream and force_cache are mutually exclusive"
        )

    try:
        ticket = await runtime.hybrid.get_ticket(
            table,
            sys_id,
            force_upstream=force_upstream,
            force_cache=force_cache,
            include_sla=include_sla,
            include_notes=include_notes,
        )
    except UnsupportedTableError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")

    return TicketResponse(**ticket.model_dump(mode="json"))
