"""
Queue inspection route.
"""
from fastapi import APIRouter, HTTPException

from ciserver.core.coordinator import build_coordinator, QueueEntry
from ciserver.schemas.build import QueueEntryResponse, QueueStatusResponse

router = APIRouter(tags=["queue"])


def _entry(entry: QueueEntry) -> QueueEntryResponse:
    return QueueEntryResponse(project_id=entry.project_id, build_id=entry.build_id)


@router.get("/queue", response_model=QueueStatusResponse)
async def get_queue() -> QueueStatusResponse:
    """The build in the worker slot (if any) and the builds waiting behind it."""
    if not build_coordinator.running:
        raise HTTPException(status_code=503, detail="Build coordinator is not running")
    snapshot = build_coordinator.snapshot()
    return QueueStatusResponse(
        busy=snapshot.busy,
        current=_entry(snapshot.current) if snapshot.current else None,
        pending=[_entry(e) for e in snapshot.pending],
    )
