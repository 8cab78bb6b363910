import asyncio
import json
import logging
from typing import AsyncIterator, List, Dict, Any, Optional

import aiohttp

from enrollment_calendar.exceptions import (
    RemoteNotFound, RemoteRejected, RemoteUnavailable
)
from enrollment_calendar.services.calendar_event import (
    BusyInterval, EventDescriptor, RemoteEvent, TimeWindow,
    format_graph_datetime, parse_graph_datetime
)
from enrollment_calendar.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

EVENT_FIELDS = "id,subject,body,start,end,location,attendees,organizer,isOnlineMeeting,onlineMeeting,changeKey"

# Statuses that mean the service could not handle the request right now
UNAVAILABLE_STATUSES = {408, 429}


class MicrosoftCalendarService:
    """
    Protocol adapter for the Microsoft Graph calendar API.

    Holds no state besides the HTTP session and performs no retries;
    every failure surfaces as a typed exception.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        default_timeout: Optional[float] = None,
    ):
        """Initialize the Microsoft Calendar service"""
        self.base_url = (base_url or settings.GRAPH_BASE_URL).rstrip("/")
        self.default_timeout = default_timeout or settings.GRAPH_TIMEOUT_SECONDS
        self.http_session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.http_session is None:
            self.http_session = aiohttp.ClientSession()
        return self.http_session

    async def close(self):
        """Close the HTTP session if this service created it"""
        if self._owns_session and self.http_session is not None:
            await self.http_session.close()
            self.http_session = None

    async def _request(
        self,
        method: str,
        path: str,
        bearer_token: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue a Graph request and map failures to typed errors"""
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {bearer_token}",
            "Accept": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }
        if payload is not None:
            headers["Content-Type"] = "application/json"

        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout or self.default_timeout),
            ) as response:
                status = response.status
                body = await response.text()
        except asyncio.TimeoutError as e:
            logger.error(f"Graph {operation} timed out")
            raise RemoteUnavailable(
                f"Graph {operation} timed out", operation=operation
            ) from e
        except aiohttp.ClientError as e:
            logger.error(f"Graph {operation} failed: {e}")
            raise RemoteUnavailable(
                f"Graph {operation} failed: {e}", operation=operation
            ) from e

        try:
            data = json.loads(body) if body else {}
        except ValueError:
            data = {"raw": body}

        if status < 400:
            return data

        error_message = f"Graph {operation} failed with status {status}"
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            error_message += f": {error['message']}"

        logger.error(error_message)
        error_kwargs = {"operation": operation, "status_code": status, "response_data": data}

        if status in (404, 410):
            raise RemoteNotFound(error_message, **error_kwargs)
        if status >= 500 or status in UNAVAILABLE_STATUSES:
            raise RemoteUnavailable(error_message, **error_kwargs)
        raise RemoteRejected(error_message, **error_kwargs)

    @staticmethod
    def _parse_event(data: Dict[str, Any], operation: str) -> RemoteEvent:
        """Read the event returned by a successful write"""
        try:
            return RemoteEvent.from_graph(data)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.error(f"Graph {operation} returned an unreadable event: {e}")
            raise RemoteRejected(
                f"Graph {operation} returned an unreadable event: {e}",
                operation=operation, response_data=data if isinstance(data, dict) else None
            ) from e

    async def create_event(
        self,
        descriptor: EventDescriptor,
        bearer_token: str,
        timeout: Optional[float] = None,
    ) -> RemoteEvent:
        """Create an event in the signed-in user's default calendar"""
        data = await self._request(
            "POST", "/me/events", bearer_token, "create_event",
            payload=descriptor.to_graph(), timeout=timeout
        )
        remote = self._parse_event(data, "create_event")
        logger.info(f"Created event in Outlook: {remote.remote_id}")
        return remote

    async def update_event(
        self,
        remote_event_id: str,
        descriptor: EventDescriptor,
        bearer_token: str,
        timeout: Optional[float] = None,
    ) -> RemoteEvent:
        """Patch an existing remote event"""
        data = await self._request(
            "PATCH", f"/me/events/{remote_event_id}", bearer_token, "update_event",
            payload=descriptor.to_graph(include_online_meeting=False), timeout=timeout
        )
        remote = self._parse_event(data, "update_event")
        logger.info(f"Updated event in Outlook: {remote_event_id}")
        return remote

    async def delete_event(
        self,
        remote_event_id: str,
        bearer_token: str,
        timeout: Optional[float] = None,
    ) -> None:
        """Delete a remote event; an already missing event counts as deleted"""
        try:
            await self._request(
                "DELETE", f"/me/events/{remote_event_id}", bearer_token, "delete_event",
                timeout=timeout
            )
        except RemoteNotFound:
            logger.info(f"Outlook event {remote_event_id} already absent, treating delete as done")
            return
        logger.info(f"Deleted event from Outlook: {remote_event_id}")

    async def list_events(
        self,
        bearer_token: str,
        since: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[RemoteEvent]:
        """
        Lazily yield remote events, newest start first.

        Args:
            bearer_token: Graph access token
            since: ISO timestamp; only events starting at or after it are listed
            page_size: $top for each page
            max_pages: Upper bound on the number of pages fetched
            timeout: Per-request timeout in seconds

        Each call issues a fresh query; the iterator cannot be resumed.
        """
        page_size = page_size or settings.SYNC_PAGE_SIZE
        max_pages = max_pages or settings.SYNC_MAX_PAGES

        params: Optional[Dict[str, Any]] = {
            "$top": str(page_size),
            "$orderby": "start/dateTime desc",
            "$select": EVENT_FIELDS,
        }
        if since:
            params["$filter"] = f"start/dateTime ge '{since}'"

        next_url: Optional[str] = "/me/events"
        pages = 0
        while next_url and pages < max_pages:
            data = await self._request(
                "GET", next_url, bearer_token, "list_events",
                params=params, timeout=timeout
            )
            pages += 1

            events_data = data.get("value", [])
            logger.info(f"Fetched {len(events_data)} events from Outlook (page {pages})")
            for event in events_data:
                try:
                    remote = RemoteEvent.from_graph(event)
                except (KeyError, TypeError, ValueError) as event_error:
                    logger.error(f"Error processing Outlook event {event.get('id')}: {event_error}")
                    # Continue with next event
                    continue
                yield remote

            # nextLink already carries the query string
            next_url = data.get("@odata.nextLink")
            params = None

        if next_url:
            logger.warning(f"Stopped listing Outlook events after {max_pages} pages; more events remain")

    async def get_free_busy(
        self,
        addresses: List[str],
        window: TimeWindow,
        bearer_token: str,
        interval_minutes: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, List[BusyInterval]]:
        """Return busy intervals per address for the given window"""
        payload = {
            "schedules": addresses,
            "startTime": format_graph_datetime(window.start),
            "endTime": format_graph_datetime(window.end),
            "availabilityViewInterval": interval_minutes or settings.FREE_BUSY_INTERVAL_MINUTES,
        }
        data = await self._request(
            "POST", "/me/calendar/getSchedule", bearer_token, "get_free_busy",
            payload=payload, timeout=timeout
        )

        schedules: Dict[str, List[BusyInterval]] = {address: [] for address in addresses}
        for schedule in data.get("value", []):
            address = schedule.get("scheduleId")
            if not address:
                continue
            if schedule.get("error"):
                logger.error(f"Free/busy lookup failed for {address}: {schedule['error'].get('message')}")
                schedules.setdefault(address, [])
                continue

            intervals = []
            for item in schedule.get("scheduleItems", []):
                item_status = item.get("status", "busy")
                if item_status == "free":
                    continue
                intervals.append(BusyInterval(
                    start=parse_graph_datetime(item.get("start")),
                    end=parse_graph_datetime(item.get("end")),
                    status=item_status,
                ))
            schedules[address] = intervals

        return schedules
