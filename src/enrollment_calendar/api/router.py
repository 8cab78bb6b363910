from fastapi import APIRouter, Depends, status
from datetime import datetime, timezone
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, model_validator

from enrollment_calendar.api.dependencies import get_caller_context, get_graph_auth, get_sync_engine
from enrollment_calendar.api.sync_router import router as sync_router
from enrollment_calendar.auth.microsoft_auth import MicrosoftGraphAuth
from enrollment_calendar.services.calendar_event import BusyInterval, CallerContext, TimeWindow, ensure_utc
from enrollment_calendar.sync.engine import CalendarSyncEngine

# Initialize API router
router = APIRouter()

# Include the event and sync routes
router.include_router(sync_router)


class CodeExchangeRequest(BaseModel):
    code: str


class FreeBusyRequest(BaseModel):
    schedules: List[str] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def _check_window(self) -> "FreeBusyRequest":
        if ensure_utc(self.start_time) >= ensure_utc(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self


# Simple route for testing
@router.get("/ping")
async def ping():
    """Simple health check endpoint"""
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

# Authentication routes
@router.get("/auth/microsoft")
async def microsoft_auth_url(
    state: Optional[str] = None,
    graph_auth: MicrosoftGraphAuth = Depends(get_graph_auth)
):
    """Get Microsoft OAuth URL for connecting an Outlook account"""
    return graph_auth.create_auth_url(state)

@router.post("/auth/microsoft/exchange")
async def microsoft_exchange_code(
    body: CodeExchangeRequest,
    context: CallerContext = Depends(get_caller_context),
    graph_auth: MicrosoftGraphAuth = Depends(get_graph_auth)
):
    """Exchange an authorization code and store the tokens for the caller"""
    return await graph_auth.exchange_code(context.user_id, body.code)

@router.get("/auth/microsoft/status")
async def microsoft_connection_status(
    context: CallerContext = Depends(get_caller_context),
    graph_auth: MicrosoftGraphAuth = Depends(get_graph_auth)
):
    """Check whether the caller has a connected Outlook account"""
    return await graph_auth.connection_status(context.user_id)

@router.delete("/auth/microsoft", status_code=status.HTTP_204_NO_CONTENT)
async def microsoft_disconnect(
    context: CallerContext = Depends(get_caller_context),
    graph_auth: MicrosoftGraphAuth = Depends(get_graph_auth)
):
    """Disconnect the caller's Outlook account"""
    await graph_auth.disconnect(context.user_id)

# Free/busy
@router.post("/free-busy", response_model=Dict[str, List[BusyInterval]])
async def get_free_busy(
    body: FreeBusyRequest,
    context: CallerContext = Depends(get_caller_context),
    engine: CalendarSyncEngine = Depends(get_sync_engine)
):
    """Get busy intervals for a set of addresses"""
    window = TimeWindow(start=body.start_time, end=body.end_time)
    return await engine.get_free_busy(context, body.schedules, window)
