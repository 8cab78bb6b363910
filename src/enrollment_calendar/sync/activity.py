import logging
from typing import Dict, Any, Optional

from enrollment_calendar.services.calendar_event import utcnow
from enrollment_calendar.sync.storage import SyncStorageManager

# Set up logging
logger = logging.getLogger(__name__)


class ActivityLogger:
    """Writes lead activity records for calendar actions to the audit trail"""

    def __init__(self, storage: SyncStorageManager):
        self.storage = storage

    async def append(
        self,
        tenant_id: str,
        actor_id: str,
        category: str,
        description: str,
        payload: Dict[str, Any],
        lead_id: Optional[str] = None,
        action_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = {
            "tenant_id": tenant_id,
            "user_id": actor_id,
            "lead_id": lead_id,
            "action_type": action_type,
            "action_category": category,
            "description": description,
            "new_value": payload,
            "created_at": utcnow().isoformat(),
        }
        await self.storage.append_activity(tenant_id, record)
        logger.info(f"Logged {action_type or category} activity for lead {lead_id}")
        return record
