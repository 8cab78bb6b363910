"""
Synchronization API Router

This module defines the API endpoints for calendar events and their
synchronization with Outlook.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import Any, Dict, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from enrollment_calendar.api.dependencies import get_caller_context, get_storage, get_sync_engine
from enrollment_calendar.services.calendar_event import (
    CalendarEvent, CallerContext, CreateEventResult, EventDescriptor, SyncSummary
)
from enrollment_calendar.sync.engine import CalendarSyncEngine
from enrollment_calendar.sync.storage import SyncStorageManager

# Create router
router = APIRouter()


class SyncRequest(BaseModel):
    since: Optional[datetime] = None
    top: Optional[int] = Field(default=None, ge=1, le=1000)


# Event endpoints
@router.post("/events", status_code=status.HTTP_201_CREATED, response_model=CreateEventResult)
async def create_event(
    descriptor: EventDescriptor,
    context: CallerContext = Depends(get_caller_context),
    engine: CalendarSyncEngine = Depends(get_sync_engine)
):
    """Create an event in Outlook and record it locally"""
    return await engine.create_event(context, descriptor)

@router.patch("/events/{event_id}", response_model=CalendarEvent)
async def update_event(
    event_id: str,
    descriptor: EventDescriptor,
    context: CallerContext = Depends(get_caller_context),
    engine: CalendarSyncEngine = Depends(get_sync_engine)
):
    """Update a synced event in Outlook, then locally"""
    return await engine.update_event(context, event_id, descriptor)

@router.delete("/events/{event_id}", response_model=CalendarEvent)
async def delete_event(
    event_id: str,
    remote_event_id: Optional[str] = None,
    context: CallerContext = Depends(get_caller_context),
    engine: CalendarSyncEngine = Depends(get_sync_engine)
):
    """Delete an event from Outlook and cancel it locally"""
    return await engine.delete_event(context, event_id, remote_event_id=remote_event_id)

# Synchronization endpoints
@router.post("/sync/run", response_model=SyncSummary)
async def sync_events(
    body: Optional[SyncRequest] = None,
    context: CallerContext = Depends(get_caller_context),
    engine: CalendarSyncEngine = Depends(get_sync_engine)
):
    """Pull new and changed Outlook events into the local store"""
    body = body or SyncRequest()
    return await engine.sync_events(context, since=body.since, page_limit=body.top)

@router.get("/sync/latest")
async def latest_sync_result(
    context: CallerContext = Depends(get_caller_context),
    storage: SyncStorageManager = Depends(get_storage)
) -> Dict[str, Any]:
    """Get the summary of the tenant's most recent sync"""
    result = await storage.get_latest_sync_result(context.tenant_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No sync has run for this tenant yet"
        )
    return result
