import json
import pytest
import pytest_asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from enrollment_calendar.auth.token_provider import AccessToken
from enrollment_calendar.services.calendar_event import CallerContext, EventDescriptor, RemoteEvent
from enrollment_calendar.sync.activity import ActivityLogger
from enrollment_calendar.sync.engine import CalendarSyncEngine
from enrollment_calendar.sync.storage import SyncStorageManager


def make_remote_event(remote_id: str, change_key: str, title: str = "Campus Tour") -> RemoteEvent:
    return RemoteEvent(
        remote_id=remote_id,
        change_key=change_key,
        title=title,
        description="<p>Tour of the main campus</p>",
        start_time=datetime(2025, 3, 2, 10, 0, tzinfo=timezone.utc),
        end_time=datetime(2025, 3, 2, 11, 0, tzinfo=timezone.utc),
        location="Admissions Office",
        attendees=["prospect@example.com"],
    )


def remote_stream(*pages):
    """Build a list_events replacement yielding the given events lazily"""
    async def _list_events(*args, **kwargs):
        for page in pages:
            for event in page:
                yield event
    return MagicMock(side_effect=_list_events)


def mock_response(status: int = 200, payload=None):
    """Async context manager standing in for an aiohttp request"""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=json.dumps(payload) if payload is not None else "")
    ctx = MagicMock()
    ctx.__aenter__.return_value = response
    return ctx


@pytest.fixture
def context():
    return CallerContext(user_id="user-1", tenant_id="tenant-1")


@pytest.fixture
def descriptor():
    return EventDescriptor(
        title="Intake Interview",
        start_time="2025-03-01T14:00:00Z",
        end_time="2025-03-01T14:30:00Z",
        attendees=["applicant@example.com"],
    )


@pytest_asyncio.fixture
async def storage(tmp_path):
    """File-backed storage manager in a temporary directory"""
    manager = SyncStorageManager(use_redis=False, storage_path=str(tmp_path))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def calendar_service():
    service = MagicMock()
    service.create_event = AsyncMock()
    service.update_event = AsyncMock()
    service.delete_event = AsyncMock(return_value=None)
    service.get_free_busy = AsyncMock(return_value={})
    service.list_events = remote_stream()
    return service


@pytest.fixture
def token_provider():
    provider = MagicMock()
    provider.get_valid_token = AsyncMock(
        return_value=AccessToken(bearer_token="test-token", account_address="advisor@school.edu")
    )
    return provider


@pytest.fixture
def engine(calendar_service, storage, token_provider):
    return CalendarSyncEngine(
        calendar_service=calendar_service,
        storage=storage,
        token_provider=token_provider,
        activity_logger=ActivityLogger(storage),
        retry_attempts=1,
        retry_wait_seconds=0,
    )
