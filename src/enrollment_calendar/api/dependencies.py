from fastapi import Header, Request

from enrollment_calendar.auth.microsoft_auth import MicrosoftGraphAuth
from enrollment_calendar.services.calendar_event import CallerContext
from enrollment_calendar.sync.engine import CalendarSyncEngine
from enrollment_calendar.sync.storage import SyncStorageManager


def get_caller_context(
    x_user_id: str = Header(..., description="Acting user id"),
    x_tenant_id: str = Header(..., description="Tenant of the acting user"),
) -> CallerContext:
    """Caller identity, resolved upstream and passed in headers"""
    return CallerContext(user_id=x_user_id, tenant_id=x_tenant_id)


def get_sync_engine(request: Request) -> CalendarSyncEngine:
    return request.app.state.sync_engine


def get_graph_auth(request: Request) -> MicrosoftGraphAuth:
    return request.app.state.graph_auth


def get_storage(request: Request) -> SyncStorageManager:
    return request.app.state.storage
