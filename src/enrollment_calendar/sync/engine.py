"""
Calendar Synchronization Engine

Keeps the local calendar event records consistent with the remote calendar
service. Every action is an independent unit: it resolves a token, performs
the remote call and only then writes the reconciled record back to the
local store.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from enrollment_calendar.auth.token_provider import AccessToken, TokenProvider
from enrollment_calendar.exceptions import (
    AuthUnavailable, CalendarSyncError, EventCancelled, LocalEventNotFound,
    NotYetSynced, RemoteCalendarError, RemoteEventMissing, RemoteNotFound,
    RemoteUnavailable
)
from enrollment_calendar.services.calendar_event import (
    BusyInterval, CalendarEvent, CallerContext, CreateEventResult, EventDescriptor,
    EventStatus, RemoteEvent, SyncDirection, SyncOutcome, SyncStatus, SyncSummary, TimeWindow,
    ensure_utc, utcnow
)
from enrollment_calendar.services.microsoft_calendar import MicrosoftCalendarService
from enrollment_calendar.sync.activity import ActivityLogger
from enrollment_calendar.sync.storage import SyncStorageManager
from enrollment_calendar.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)

ACTIVITY_CATEGORY = "calendar"


class CalendarSyncEngine:
    """
    Orchestrates create, update, delete and bidirectional sync of calendar events
    """

    def __init__(
        self,
        calendar_service: MicrosoftCalendarService,
        storage: SyncStorageManager,
        token_provider: TokenProvider,
        activity_logger: Optional[ActivityLogger] = None,
        retry_attempts: Optional[int] = None,
        retry_wait_seconds: Optional[float] = None,
        default_timeout: Optional[float] = None,
    ):
        """Initialize the calendar sync engine"""
        self.calendar_service = calendar_service
        self.storage = storage
        self.token_provider = token_provider
        self.activity_logger = activity_logger
        self.retry_attempts = retry_attempts or settings.REMOTE_RETRY_ATTEMPTS
        self.retry_wait_seconds = (
            retry_wait_seconds if retry_wait_seconds is not None
            else settings.REMOTE_RETRY_WAIT_SECONDS
        )
        self.default_timeout = default_timeout or settings.GRAPH_TIMEOUT_SECONDS

    async def _get_token(self, context: CallerContext) -> AccessToken:
        try:
            return await self.token_provider.get_valid_token(context.user_id)
        except CalendarSyncError:
            raise
        except Exception as e:
            logger.error(f"Could not obtain calendar token for user {context.user_id}: {e}")
            raise AuthUnavailable(f"Could not obtain calendar token: {e}",
                                  operation="get_valid_token") from e

    async def _call_idempotent(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Call an idempotent remote operation, retrying while the service is unavailable"""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=10),
            retry=retry_if_exception_type(RemoteUnavailable),
            reraise=True
        ):
            with attempt:
                return await func(*args, **kwargs)

    async def _load_event(self, context: CallerContext, event_id: str) -> CalendarEvent:
        event = await self.storage.find_event(event_id)
        if event is None or event.tenant_id != context.tenant_id:
            raise LocalEventNotFound(f"Calendar event {event_id} not found")
        return event

    async def _log_activity(self, context: CallerContext, event: CalendarEvent,
                            action_type: str, description: str, payload: Dict[str, Any]) -> None:
        """Append a lead activity record; failures never reach the caller"""
        if not self.activity_logger or not event.linked_lead_id:
            return
        try:
            await self.activity_logger.append(
                tenant_id=context.tenant_id,
                actor_id=context.user_id,
                category=ACTIVITY_CATEGORY,
                description=description,
                payload=payload,
                lead_id=event.linked_lead_id,
                action_type=action_type,
            )
        except Exception as e:
            logger.warning(f"Failed to log {action_type} activity for event {event.id}: {e}")

    async def create_event(
        self,
        context: CallerContext,
        descriptor: EventDescriptor,
        timeout: Optional[float] = None,
    ) -> CreateEventResult:
        """
        Create an event remotely and record it locally.

        The local record survives a failed remote call as ``sync_failed``;
        the remote error is raised with that record attached.
        """
        token = await self._get_token(context)

        event = await self.storage.insert_event(CalendarEvent.from_descriptor(descriptor, context))

        remote_error: Optional[RemoteCalendarError] = None
        try:
            remote = await self.calendar_service.create_event(
                descriptor, token.bearer_token, timeout=timeout or self.default_timeout
            )
        except RemoteCalendarError as e:
            remote_error = e

        if remote_error is None:
            event = await self.storage.update_event(event.with_changes(
                remote_event_id=remote.remote_id,
                remote_change_token=remote.change_key,
                online_meeting_url=remote.online_meeting_url,
                sync_status=SyncStatus.SYNCED,
                sync_direction=SyncDirection.TO_REMOTE,
                last_synced_at=utcnow(),
            ))
        else:
            logger.error(f"Remote create failed for event {event.id}, keeping it as sync_failed: {remote_error}")
            event = await self.storage.update_event(event.with_changes(sync_status=SyncStatus.SYNC_FAILED))

        await self._log_activity(
            context, event, "meeting_scheduled", f"Meeting scheduled: {event.title}",
            {
                "title": event.title,
                "startTime": event.start_time.isoformat(),
                "attendees": event.attendees,
                "syncedToOutlook": remote_error is None,
            }
        )

        if remote_error is not None:
            remote_error.event = event
            remote_error.local_state_changed = True
            raise remote_error

        return CreateEventResult(event=event, online_meeting_url=event.online_meeting_url)

    async def update_event(
        self,
        context: CallerContext,
        event_id: str,
        descriptor: EventDescriptor,
        timeout: Optional[float] = None,
    ) -> CalendarEvent:
        """
        Push new event details to the remote service, then store them locally.

        Nothing changes locally unless the remote update succeeded, except
        that a vanished remote event marks the record ``sync_failed``.
        """
        event = await self._load_event(context, event_id)
        if event.is_cancelled:
            raise EventCancelled(f"Calendar event {event_id} is cancelled", operation="update_event")
        if not event.remote_event_id:
            raise NotYetSynced(f"Calendar event {event_id} has no remote event yet", operation="update_event")

        token = await self._get_token(context)

        try:
            remote = await self._call_idempotent(
                self.calendar_service.update_event,
                event.remote_event_id, descriptor, token.bearer_token,
                timeout=timeout or self.default_timeout
            )
        except RemoteNotFound as e:
            logger.error(f"Remote event {event.remote_event_id} for {event_id} is gone, marking orphaned")
            orphan = await self.storage.update_event(event.with_changes(sync_status=SyncStatus.SYNC_FAILED))
            raise RemoteEventMissing(
                f"Remote event for calendar event {event_id} no longer exists",
                operation="update_event",
                status_code=e.status_code,
                response_data=e.response_data,
                local_state_changed=True,
                event=orphan,
            ) from e

        event = await self.storage.update_event(event.with_changes(
            title=descriptor.title,
            description=descriptor.description,
            start_time=descriptor.start_time,
            end_time=descriptor.end_time,
            location=descriptor.location,
            attendees=descriptor.attendees,
            linked_lead_id=descriptor.linked_lead_id or event.linked_lead_id,
            remote_change_token=remote.change_key,
            sync_status=SyncStatus.SYNCED,
            sync_direction=SyncDirection.TO_REMOTE,
            last_synced_at=utcnow(),
        ))

        await self._log_activity(
            context, event, "meeting_updated", f"Meeting updated: {event.title}",
            {"title": event.title, "startTime": event.start_time.isoformat(), "attendees": event.attendees}
        )
        return event

    async def delete_event(
        self,
        context: CallerContext,
        event_id: str,
        remote_event_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CalendarEvent:
        """
        Cancel an event: delete it remotely, then mark the local record cancelled.

        The local record is only cancelled once the remote deletion is
        confirmed (an already missing remote event counts as confirmed).
        """
        event = await self._load_event(context, event_id)
        if event.is_cancelled:
            return event

        remote_id = event.remote_event_id or remote_event_id
        changes: Dict[str, Any] = {"status": EventStatus.CANCELLED}

        if remote_id:
            token = await self._get_token(context)
            await self._call_idempotent(
                self.calendar_service.delete_event,
                remote_id, token.bearer_token,
                timeout=timeout or self.default_timeout
            )
            changes.update(
                remote_event_id=remote_id,
                sync_status=SyncStatus.SYNCED,
                last_synced_at=utcnow(),
            )

        event = await self.storage.update_event(event.with_changes(**changes))

        await self._log_activity(
            context, event, "meeting_cancelled", f"Meeting cancelled: {event.title}",
            {"title": event.title, "startTime": event.start_time.isoformat()}
        )
        return event

    async def sync_events(
        self,
        context: CallerContext,
        since: Optional[Union[str, datetime]] = None,
        page_limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SyncSummary:
        """
        Pull remote events into the local store.

        Unknown remote events are materialized, known ones are refreshed
        only when their change token differs. Local records are never
        deleted because an event is absent from the listed window.
        """
        token = await self._get_token(context)

        if isinstance(since, datetime):
            since = ensure_utc(since).strftime("%Y-%m-%dT%H:%M:%S")

        summary = SyncSummary()
        try:
            async for remote in self.calendar_service.list_events(
                token.bearer_token,
                since=since,
                page_size=page_limit,
                timeout=timeout or self.default_timeout,
            ):
                summary.examined += 1
                local_id, outcome = await self._reconcile(context, remote)
                summary.record(local_id, outcome)
        except CalendarSyncError as e:
            # Records reconciled before the failure stay written
            e.local_state_changed = bool(summary.created or summary.updated)
            summary.finished_at = utcnow()
            logger.error(
                f"Sync for tenant {context.tenant_id} aborted after {summary.examined} events: {e}"
            )
            try:
                await self.storage.save_sync_result(context.tenant_id, summary.model_dump(mode="json"))
            except CalendarSyncError as save_error:
                logger.warning(f"Could not save partial sync result for tenant {context.tenant_id}: {save_error}")
            raise

        summary.finished_at = utcnow()
        logger.info(
            f"Sync for tenant {context.tenant_id}: examined {summary.examined}, "
            f"created {len(summary.created)}, updated {len(summary.updated)}"
        )
        await self.storage.save_sync_result(context.tenant_id, summary.model_dump(mode="json"))
        return summary

    async def _reconcile(self, context: CallerContext, remote: RemoteEvent) -> Tuple[str, SyncOutcome]:
        existing = await self.storage.find_event_by_remote_id(context.tenant_id, remote.remote_id)

        if existing is None:
            event = await self.storage.insert_event(CalendarEvent.from_remote(remote, context))
            return event.id, SyncOutcome.CREATED

        if existing.remote_change_token == remote.change_key:
            return existing.id, SyncOutcome.UNCHANGED

        # Remote wins for the fields it owns
        event = await self.storage.update_event(existing.with_changes(
            title=remote.title,
            description=remote.description,
            start_time=remote.start_time,
            end_time=remote.end_time,
            location=remote.location,
            remote_change_token=remote.change_key,
            sync_status=SyncStatus.SYNCED,
            sync_direction=SyncDirection.FROM_REMOTE,
            last_synced_at=utcnow(),
        ))
        return event.id, SyncOutcome.UPDATED

    async def get_free_busy(
        self,
        context: CallerContext,
        addresses: List[str],
        window: TimeWindow,
        timeout: Optional[float] = None,
    ) -> Dict[str, List[BusyInterval]]:
        """Look up busy intervals; no addresses means the connected account itself"""
        token = await self._get_token(context)
        if not addresses:
            if not token.account_address:
                raise AuthUnavailable("Connected account has no address for free/busy lookup",
                                      operation="get_free_busy")
            addresses = [token.account_address]

        return await self._call_idempotent(
            self.calendar_service.get_free_busy,
            addresses, window, token.bearer_token,
            timeout=timeout or self.default_timeout
        )
