from typing import Any, Dict, Optional


class CalendarSyncError(Exception):
    """Base exception for calendar synchronization errors"""

    default_message = "Calendar synchronization failed"
    http_status = 500

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
        local_state_changed: bool = False,
        event: Any = None,
    ):
        if message is None:
            message = self.default_message
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_code = status_code
        self.response_data = response_data
        self.local_state_changed = local_state_changed
        # Local record left behind by the failed action, if any
        self.event = event

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error": type(self).__name__,
            "message": self.message,
            "operation": self.operation,
            "local_state_changed": self.local_state_changed,
            "status_code": self.status_code,
        }
        if self.event is not None:
            data["event"] = self.event.model_dump(mode="json")
        return data


# Token errors
class AuthUnavailable(CalendarSyncError):
    default_message = "No valid calendar token available. Please reconnect the Outlook account"
    http_status = 401


# Remote service errors
class RemoteCalendarError(CalendarSyncError):
    """Raised when the remote calendar service call fails"""

    http_status = 502


class RemoteUnavailable(RemoteCalendarError):
    default_message = "Remote calendar service is unavailable"
    http_status = 503


class RemoteRejected(RemoteCalendarError):
    default_message = "Remote calendar service rejected the request"
    http_status = 422


class RemoteNotFound(RemoteCalendarError):
    default_message = "Remote calendar event not found"
    http_status = 404


class RemoteEventMissing(RemoteNotFound):
    default_message = "Remote calendar event no longer exists; the local event is orphaned"


# Local errors
class LocalStoreFailure(CalendarSyncError):
    default_message = "Local event store failure"
    http_status = 500


class LocalEventNotFound(CalendarSyncError):
    default_message = "Calendar event not found"
    http_status = 404


class NotYetSynced(CalendarSyncError):
    default_message = "Calendar event has not been created remotely yet"
    http_status = 409


class EventCancelled(CalendarSyncError):
    default_message = "Calendar event is cancelled"
    http_status = 409
