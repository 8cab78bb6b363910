import pytest
import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from conftest import mock_response
from enrollment_calendar.exceptions import RemoteNotFound, RemoteRejected, RemoteUnavailable
from enrollment_calendar.services.calendar_event import EventDescriptor, TimeWindow
from enrollment_calendar.services.microsoft_calendar import MicrosoftCalendarService


def graph_event(event_id="evt_1", change_key="ck_1", subject="Intake Interview"):
    return {
        "id": event_id,
        "changeKey": change_key,
        "subject": subject,
        "body": {"contentType": "html", "content": ""},
        "start": {"dateTime": "2025-03-01T14:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2025-03-01T14:30:00.0000000", "timeZone": "UTC"},
        "location": {"displayName": "Room 12"},
        "attendees": [],
        "isOnlineMeeting": False,
    }


@pytest.fixture
def session():
    """Create a mock aiohttp session"""
    return MagicMock()


@pytest.fixture
def graph_service(session):
    """Create a test instance of the MicrosoftCalendarService"""
    return MicrosoftCalendarService(session=session, base_url="https://graph.example.com/v1.0")


@pytest.fixture
def descriptor():
    return EventDescriptor(
        title="Intake Interview",
        start_time="2025-03-01T14:00:00Z",
        end_time="2025-03-01T14:30:00Z",
        location="Room 12",
        is_online_meeting=True,
    )


@pytest.mark.asyncio
async def test_create_event(graph_service, session, descriptor):
    """Test the create_event method"""
    session.request.return_value = mock_response(201, graph_event())

    remote = await graph_service.create_event(descriptor, "test-token")

    assert remote.remote_id == "evt_1"
    assert remote.change_key == "ck_1"
    assert remote.location == "Room 12"

    # Verify that the request was made with the correct parameters
    session.request.assert_called_once()
    args, kwargs = session.request.call_args
    assert args == ("POST", "https://graph.example.com/v1.0/me/events")
    assert kwargs["headers"]["Authorization"] == "Bearer test-token"
    assert kwargs["headers"]["Prefer"] == 'outlook.timezone="UTC"'
    assert kwargs["json"]["subject"] == "Intake Interview"
    assert kwargs["json"]["isOnlineMeeting"] is True


@pytest.mark.asyncio
async def test_update_event_patches_without_online_meeting(graph_service, session, descriptor):
    """Test the update_event method"""
    session.request.return_value = mock_response(200, graph_event(change_key="ck_2"))

    remote = await graph_service.update_event("evt_1", descriptor, "test-token")

    assert remote.change_key == "ck_2"
    args, kwargs = session.request.call_args
    assert args == ("PATCH", "https://graph.example.com/v1.0/me/events/evt_1")
    assert "isOnlineMeeting" not in kwargs["json"]


@pytest.mark.asyncio
async def test_update_missing_event_raises_not_found(graph_service, session, descriptor):
    session.request.return_value = mock_response(
        404, {"error": {"code": "ErrorItemNotFound", "message": "The specified object was not found"}}
    )

    with pytest.raises(RemoteNotFound) as exc_info:
        await graph_service.update_event("evt_1", descriptor, "test-token")

    assert exc_info.value.status_code == 404
    assert "not found" in str(exc_info.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 410])
async def test_delete_missing_event_counts_as_deleted(graph_service, session, status):
    session.request.return_value = mock_response(status, {"error": {"code": "ErrorItemNotFound"}})

    assert await graph_service.delete_event("evt_1", "test-token") is None


@pytest.mark.asyncio
async def test_delete_event(graph_service, session):
    session.request.return_value = mock_response(204)

    await graph_service.delete_event("evt_1", "test-token")

    args, kwargs = session.request.call_args
    assert args == ("DELETE", "https://graph.example.com/v1.0/me/events/evt_1")
    assert kwargs["json"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error_type", [
    (500, RemoteUnavailable),
    (503, RemoteUnavailable),
    (429, RemoteUnavailable),
    (400, RemoteRejected),
    (403, RemoteRejected),
])
async def test_error_statuses_are_classified(graph_service, session, status, error_type):
    session.request.return_value = mock_response(status, {"error": {"message": "nope"}})

    with pytest.raises(error_type) as exc_info:
        await graph_service.delete_event("evt_1", "test-token")

    assert exc_info.value.status_code == status
    assert exc_info.value.operation == "delete_event"


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [asyncio.TimeoutError(), aiohttp.ClientConnectionError("refused")])
async def test_transport_failures_are_unavailable(graph_service, session, descriptor, failure):
    session.request.side_effect = failure

    with pytest.raises(RemoteUnavailable):
        await graph_service.create_event(descriptor, "test-token")


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [
    {"subject": "Intake Interview"},
    {"raw": "<html>gateway</html>"},
    {"id": "evt_1", "start": {"dateTime": "garbage"}},
])
async def test_unreadable_create_reply_is_rejected(graph_service, session, descriptor, reply):
    """A successful status with an unusable body still surfaces as a typed error"""
    session.request.return_value = mock_response(201, reply)

    with pytest.raises(RemoteRejected) as exc_info:
        await graph_service.create_event(descriptor, "test-token")

    assert exc_info.value.operation == "create_event"
    assert exc_info.value.response_data == reply


@pytest.mark.asyncio
async def test_non_json_update_reply_is_rejected(graph_service, session, descriptor):
    response = MagicMock()
    response.status = 200
    response.text = AsyncMock(return_value="not json")
    ctx = MagicMock()
    ctx.__aenter__.return_value = response
    session.request.return_value = ctx

    with pytest.raises(RemoteRejected) as exc_info:
        await graph_service.update_event("evt_1", descriptor, "test-token")

    assert exc_info.value.response_data == {"raw": "not json"}


@pytest.mark.asyncio
async def test_list_events_follows_next_link(graph_service, session):
    """Test that list_events walks every page"""
    next_link = "https://graph.example.com/v1.0/me/events?$skip=2"
    session.request.side_effect = [
        mock_response(200, {
            "value": [graph_event("evt_1"), graph_event("evt_2")],
            "@odata.nextLink": next_link,
        }),
        mock_response(200, {"value": [graph_event("evt_3")]}),
    ]

    events = [event async for event in graph_service.list_events(
        "test-token", since="2025-03-01T00:00:00", page_size=2
    )]

    assert [event.remote_id for event in events] == ["evt_1", "evt_2", "evt_3"]
    assert session.request.call_count == 2

    first_call, second_call = session.request.call_args_list
    params = first_call.kwargs["params"]
    assert params["$top"] == "2"
    assert params["$orderby"] == "start/dateTime desc"
    assert params["$filter"] == "start/dateTime ge '2025-03-01T00:00:00'"
    assert "changeKey" in params["$select"]
    assert second_call.args[1] == next_link
    assert second_call.kwargs["params"] is None


@pytest.mark.asyncio
async def test_list_events_stops_at_max_pages(graph_service, session, caplog):
    session.request.return_value = mock_response(200, {
        "value": [graph_event("evt_1")],
        "@odata.nextLink": "https://graph.example.com/v1.0/me/events?$skip=1",
    })

    events = [event async for event in graph_service.list_events("test-token", max_pages=3)]

    assert len(events) == 3
    assert session.request.call_count == 3
    assert "more events remain" in caplog.text


@pytest.mark.asyncio
async def test_list_events_last_page_logs_no_cutoff(graph_service, session, caplog):
    session.request.return_value = mock_response(200, {"value": [graph_event("evt_1")]})

    events = [event async for event in graph_service.list_events("test-token", max_pages=1)]

    assert len(events) == 1
    assert "more events remain" not in caplog.text


@pytest.mark.asyncio
async def test_list_events_skips_malformed_events(graph_service, session):
    broken = {"id": "evt_bad", "start": {"dateTime": "not a date"}, "end": None}
    session.request.return_value = mock_response(200, {"value": [broken, graph_event("evt_2")]})

    events = [event async for event in graph_service.list_events("test-token")]

    assert [event.remote_id for event in events] == ["evt_2"]


@pytest.mark.asyncio
async def test_get_free_busy(graph_service, session):
    """Test that getSchedule items are mapped to busy intervals"""
    session.request.return_value = mock_response(200, {"value": [
        {
            "scheduleId": "advisor@school.edu",
            "scheduleItems": [
                {
                    "status": "busy",
                    "start": {"dateTime": "2025-03-01T09:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2025-03-01T10:00:00.0000000", "timeZone": "UTC"},
                },
                {
                    "status": "free",
                    "start": {"dateTime": "2025-03-01T10:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2025-03-01T11:00:00.0000000", "timeZone": "UTC"},
                },
                {
                    "status": "tentative",
                    "start": {"dateTime": "2025-03-01T13:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2025-03-01T13:30:00.0000000", "timeZone": "UTC"},
                },
            ],
        },
        {
            "scheduleId": "ghost@school.edu",
            "error": {"message": "Mailbox not found", "responseCode": "ErrorMailboxNotFound"},
        },
    ]})
    window = TimeWindow(start="2025-03-01T08:00:00Z", end="2025-03-01T18:00:00Z")

    schedules = await graph_service.get_free_busy(
        ["advisor@school.edu", "ghost@school.edu"], window, "test-token"
    )

    assert [interval.status for interval in schedules["advisor@school.edu"]] == ["busy", "tentative"]
    assert schedules["advisor@school.edu"][0].start.hour == 9
    assert schedules["ghost@school.edu"] == []

    args, kwargs = session.request.call_args
    assert args == ("POST", "https://graph.example.com/v1.0/me/calendar/getSchedule")
    assert kwargs["json"]["availabilityViewInterval"] == 30
    assert kwargs["json"]["startTime"] == {"dateTime": "2025-03-01T08:00:00", "timeZone": "UTC"}


@pytest.mark.asyncio
async def test_close_leaves_borrowed_session_open(graph_service, session):
    await graph_service.close()

    session.close.assert_not_called()
