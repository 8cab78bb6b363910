import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_graph_datetime(value: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """
    Parse a Graph dateTimeTimeZone object.

    Graph returns up to seven fractional digits and no offset, e.g.
    ``2025-03-01T14:00:00.0000000``; requests are sent with the UTC
    time zone preference so the value is read as UTC.
    """
    if not value or not value.get("dateTime"):
        return None

    raw = value["dateTime"].replace("Z", "")
    if "." in raw:
        base, fraction = raw.split(".", 1)
        raw = f"{base}.{fraction[:6]}"

    return ensure_utc(datetime.fromisoformat(raw))


def format_graph_datetime(value: datetime) -> Dict[str, str]:
    return {
        "dateTime": ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S"),
        "timeZone": "UTC",
    }


class SyncStatus(str, Enum):
    UNSYNCED = "unsynced"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


class SyncDirection(str, Enum):
    """Which side drove the last successful sync"""
    TO_REMOTE = "to_remote"
    FROM_REMOTE = "from_remote"


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def _unique_addresses(addresses: List[str]) -> List[str]:
    seen = set()
    result = []
    for address in addresses:
        key = address.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(address.strip())
    return result


class CallerContext(BaseModel):
    """Opaque identity of the caller: acting user and tenant"""
    user_id: str
    tenant_id: str


class TimeWindow(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


class BusyInterval(BaseModel):
    start: datetime
    end: datetime
    status: str = "busy"


class EventDescriptor(BaseModel):
    """Caller-supplied description of an event to create or update"""
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    is_online_meeting: bool = False
    linked_lead_id: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("attendees")
    @classmethod
    def _dedupe_attendees(cls, value: List[str]) -> List[str]:
        return _unique_addresses(value)

    @model_validator(mode="after")
    def _check_window(self) -> "EventDescriptor":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    def to_graph(self, include_online_meeting: bool = True) -> Dict[str, Any]:
        """Build the Microsoft Graph event payload"""
        payload: Dict[str, Any] = {
            "subject": self.title,
            "body": {
                "contentType": "HTML",
                "content": self.description or "",
            },
            "start": format_graph_datetime(self.start_time),
            "end": format_graph_datetime(self.end_time),
        }

        if self.location:
            payload["location"] = {"displayName": self.location}

        if self.attendees:
            payload["attendees"] = [
                {"emailAddress": {"address": address}, "type": "required"}
                for address in self.attendees
            ]

        if include_online_meeting and self.is_online_meeting:
            payload["isOnlineMeeting"] = True
            payload["onlineMeetingProvider"] = "teamsForBusiness"

        return payload


class RemoteEvent(BaseModel):
    """An event as observed on the remote calendar service"""
    remote_id: str
    change_key: Optional[str] = None
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    is_online_meeting: bool = False
    online_meeting_url: Optional[str] = None

    @classmethod
    def from_graph(cls, event: Dict[str, Any]) -> "RemoteEvent":
        """
        Create a RemoteEvent from a Microsoft Graph event
        """
        attendees = []
        for attendee in event.get("attendees") or []:
            address = (attendee.get("emailAddress") or {}).get("address")
            if address:
                attendees.append(address)

        online_meeting = event.get("onlineMeeting") or {}
        location = (event.get("location") or {}).get("displayName") or None

        return cls(
            remote_id=event["id"],
            change_key=event.get("changeKey"),
            title=event.get("subject") or "Untitled Event",
            description=(event.get("body") or {}).get("content"),
            start_time=parse_graph_datetime(event.get("start")),
            end_time=parse_graph_datetime(event.get("end")),
            location=location,
            attendees=_unique_addresses(attendees),
            is_online_meeting=bool(event.get("isOnlineMeeting", False)),
            online_meeting_url=online_meeting.get("joinUrl"),
        )


class CalendarEvent(BaseModel):
    """
    Locally persisted calendar event
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    user_id: str
    remote_event_id: Optional[str] = None
    remote_change_token: Optional[str] = None
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    is_online_meeting: bool = False
    online_meeting_url: Optional[str] = None
    linked_lead_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    sync_direction: Optional[SyncDirection] = None
    status: EventStatus = EventStatus.SCHEDULED
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _synced_requires_remote_id(self) -> "CalendarEvent":
        if self.sync_status == SyncStatus.SYNCED and not self.remote_event_id:
            raise ValueError("a synced event must carry a remote_event_id")
        return self

    def with_changes(self, **changes: Any) -> "CalendarEvent":
        """Return a validated copy with the given fields replaced"""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @classmethod
    def from_descriptor(cls, descriptor: EventDescriptor, context: CallerContext) -> "CalendarEvent":
        return cls(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            title=descriptor.title,
            description=descriptor.description,
            start_time=descriptor.start_time,
            end_time=descriptor.end_time,
            location=descriptor.location,
            attendees=descriptor.attendees,
            is_online_meeting=descriptor.is_online_meeting,
            linked_lead_id=descriptor.linked_lead_id,
        )

    @classmethod
    def from_remote(cls, remote: RemoteEvent, context: CallerContext) -> "CalendarEvent":
        now = utcnow()
        return cls(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            remote_event_id=remote.remote_id,
            remote_change_token=remote.change_key,
            title=remote.title,
            description=remote.description,
            start_time=remote.start_time,
            end_time=remote.end_time,
            location=remote.location,
            attendees=remote.attendees,
            is_online_meeting=remote.is_online_meeting,
            online_meeting_url=remote.online_meeting_url,
            sync_status=SyncStatus.SYNCED,
            sync_direction=SyncDirection.FROM_REMOTE,
            last_synced_at=now,
            created_at=now,
            updated_at=now,
        )


class CreateEventResult(BaseModel):
    event: CalendarEvent
    online_meeting_url: Optional[str] = None


class SyncSummary(BaseModel):
    examined: int = 0
    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def record(self, local_id: str, outcome: SyncOutcome) -> None:
        if outcome == SyncOutcome.CREATED and local_id not in self.created:
            self.created.append(local_id)
        elif outcome == SyncOutcome.UPDATED and local_id not in self.updated and local_id not in self.created:
            self.updated.append(local_id)
