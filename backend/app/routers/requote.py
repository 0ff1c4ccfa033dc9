"""Requote run router — starts the requote bot and streams its progress as SSE."""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import get_requote_supervisor, get_store
from app.schemas.requote import PendingRequotePackage, PendingRequotesResponse
from app.services.package_store import PackageStore
from app.services.progress_stream import ProgressStreamPublisher
from app.services.requote_supervisor import RequoteSupervisor

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Runs outlive the request that started them; a client disconnect only ends its stream
_active_runs: dict[asyncio.Task, asyncio.Event] = {}


@router.post("/run")
async def start_requote_run(supervisor: RequoteSupervisor = Depends(get_requote_supervisor)):
    """Run the requote bot and stream progress events."""
    publisher = ProgressStreamPublisher()
    cancel_event = asyncio.Event()
    task = asyncio.create_task(supervisor.run(publisher, cancel_event))
    _active_runs[task] = cancel_event
    task.add_done_callback(lambda t: _active_runs.pop(t, None))

    return StreamingResponse(publisher.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/run", response_model=PendingRequotesResponse)
async def get_pending_requotes(store: PackageStore = Depends(get_store)):
    """How many monitored packages are waiting for the requote bot."""
    try:
        packages = await store.list_pending_requotes()
    except SQLAlchemyError as e:
        logger.error(f"Failed to load pending requotes: {e}")
        raise HTTPException(status_code=500, detail="Failed to load pending requotes")

    return PendingRequotesResponse(
        pendingCount=len(packages),
        packages=[
            PendingRequotePackage(id=p.id, external_id=p.tc_package_id, title=p.title)
            for p in packages
        ],
    )


@router.post("/clear-pending")
async def clear_pending_requotes(store: PackageStore = Depends(get_store)):
    """Mark every pending package as completed."""
    try:
        cleared = await store.clear_pending_requotes()
    except SQLAlchemyError as e:
        logger.error(f"Failed to clear pending requotes: {e}")
        raise HTTPException(status_code=500, detail="Failed to clear pending requotes")

    logger.info(f"Cleared {cleared} pending requotes")
    return {"success": True, "cleared": cleared}


async def cancel_active_runs():
    """Signal every in-flight run to stop and wait for their bots to be killed."""
    if not _active_runs:
        return
    for cancel_event in _active_runs.values():
        cancel_event.set()
    await asyncio.gather(*list(_active_runs), return_exceptions=True)
