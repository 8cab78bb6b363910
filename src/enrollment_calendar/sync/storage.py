"""
Sync Storage Manager

This module provides storage for calendar synchronization data: the local
calendar event records, the remote id index, sync results, the activity
trail and connected account tokens.
"""

import json
import logging
import os
from contextlib import contextmanager
from typing import Dict, List, Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from enrollment_calendar.exceptions import LocalStoreFailure
from enrollment_calendar.services.calendar_event import CalendarEvent, utcnow
from enrollment_calendar.utils.config import settings

# Set up logging
logger = logging.getLogger(__name__)


class SyncStorageManager:
    """
    Manages storage for calendar synchronization data.
    Supports both Redis and file-based storage.
    """

    def __init__(self, use_redis: bool = True, storage_path: Optional[str] = None,
                 history_limit: Optional[int] = None):
        """Initialize the storage manager"""
        self.use_redis = bool(use_redis and settings.REDIS_HOST)
        self.redis = None
        self.file_storage_path = storage_path or os.environ.get("STORAGE_PATH", settings.STORAGE_PATH)
        self.history_limit = history_limit or settings.HISTORY_LIMIT

    async def initialize(self):
        """Initialize storage connections"""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}",
                    password=settings.REDIS_PASSWORD or None,
                    encoding="utf-8",
                    decode_responses=True
                )
                await self.redis.ping()
                logger.info("Redis connection established for sync storage")
            except (RedisError, OSError) as e:
                logger.error(f"Failed to connect to Redis: {e}")
                self.use_redis = False
                self.redis = None
                logger.info("Falling back to file-based storage")

        if not self.use_redis:
            os.makedirs(os.path.join(self.file_storage_path, "events"), exist_ok=True)

    async def close(self):
        """Close storage connections"""
        if self.use_redis and self.redis:
            await self.redis.aclose()

    @property
    def _redis_enabled(self) -> bool:
        return bool(self.use_redis and self.redis)

    @contextmanager
    def _store_errors(self, operation: str):
        try:
            yield
        except (RedisError, OSError, ValueError) as e:
            logger.error(f"Local store {operation} failed: {e}")
            raise LocalStoreFailure(
                f"Local store {operation} failed: {e}", operation=operation
            ) from e

    # File helpers

    def _path(self, *parts: str) -> str:
        return os.path.join(self.file_storage_path, *parts)

    @staticmethod
    def _read_json(path: str, default: Any) -> Any:
        if os.path.exists(path):
            with open(path, "r") as f:
                return json.load(f)
        return default

    @staticmethod
    def _write_json(path: str, data: Any) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, path)

    def _remote_index_path(self, tenant_id: str) -> str:
        return self._path(f"remote_index_{tenant_id}.json")

    # Calendar events

    async def insert_event(self, event: CalendarEvent) -> CalendarEvent:
        """Persist a new calendar event"""
        with self._store_errors("insert_event"):
            payload = event.model_dump_json()
            if self._redis_enabled:
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.set(f"calendar:event:{event.id}", payload)
                    if event.remote_event_id:
                        pipe.set(f"calendar:remote:{event.tenant_id}:{event.remote_event_id}", event.id)
                    await pipe.execute()
            else:
                self._write_json(self._path("events", f"{event.id}.json"), json.loads(payload))
                if event.remote_event_id:
                    self._index_remote_id(event)
        return event

    async def find_event(self, event_id: str) -> Optional[CalendarEvent]:
        """Get a calendar event by local id"""
        with self._store_errors("find_event"):
            if self._redis_enabled:
                raw = await self.redis.get(f"calendar:event:{event_id}")
                return CalendarEvent.model_validate_json(raw) if raw else None
            data = self._read_json(self._path("events", f"{event_id}.json"), None)
            return CalendarEvent.model_validate(data) if data else None

    async def find_event_by_remote_id(self, tenant_id: str, remote_event_id: str) -> Optional[CalendarEvent]:
        """Get the tenant's calendar event linked to a remote event id"""
        with self._store_errors("find_event_by_remote_id"):
            if self._redis_enabled:
                event_id = await self.redis.get(f"calendar:remote:{tenant_id}:{remote_event_id}")
            else:
                event_id = self._read_json(self._remote_index_path(tenant_id), {}).get(remote_event_id)
        if not event_id:
            return None
        return await self.find_event(event_id)

    async def update_event(self, event: CalendarEvent) -> CalendarEvent:
        """Overwrite a stored calendar event"""
        event = event.with_changes(updated_at=utcnow())
        with self._store_errors("update_event"):
            payload = event.model_dump_json()
            if self._redis_enabled:
                event_key = f"calendar:event:{event.id}"
                async with self.redis.pipeline(transaction=True) as pipe:
                    # A concurrent delete of the key aborts the transaction
                    await pipe.watch(event_key)
                    if not await pipe.exists(event_key):
                        raise LocalStoreFailure(f"Calendar event {event.id} does not exist", operation="update_event")
                    pipe.multi()
                    pipe.set(event_key, payload)
                    if event.remote_event_id:
                        pipe.set(f"calendar:remote:{event.tenant_id}:{event.remote_event_id}", event.id)
                    await pipe.execute()
            else:
                path = self._path("events", f"{event.id}.json")
                if not os.path.exists(path):
                    raise LocalStoreFailure(f"Calendar event {event.id} does not exist", operation="update_event")
                self._write_json(path, json.loads(payload))
                if event.remote_event_id:
                    self._index_remote_id(event)
        return event

    def _index_remote_id(self, event: CalendarEvent) -> None:
        index_path = self._remote_index_path(event.tenant_id)
        index = self._read_json(index_path, {})
        if index.get(event.remote_event_id) != event.id:
            index[event.remote_event_id] = event.id
            self._write_json(index_path, index)

    # Sync results

    async def save_sync_result(self, tenant_id: str, result: Dict[str, Any]) -> None:
        """Save the result of a sync operation for a tenant"""
        timestamp = utcnow().strftime("%Y%m%d%H%M%S")

        with self._store_errors("save_sync_result"):
            if self._redis_enabled:
                # Save latest result
                await self.redis.set(f"sync:{tenant_id}:latest_result", json.dumps(result, default=str))

                # Save to history with timestamp
                await self.redis.lpush(f"sync:{tenant_id}:history", json.dumps({
                    "timestamp": timestamp,
                    "result": result
                }, default=str))

                # Trim history
                await self.redis.ltrim(f"sync:{tenant_id}:history", 0, self.history_limit - 1)
            else:
                self._write_json(self._path(f"latest_sync_{tenant_id}.json"), result)

                history_path = self._path("history", f"sync_{tenant_id}.json")
                history = self._read_json(history_path, [])
                history.insert(0, {"timestamp": timestamp, "result": result})
                self._write_json(history_path, history[:self.history_limit])

    async def get_latest_sync_result(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        """Get the latest sync result for a tenant"""
        with self._store_errors("get_latest_sync_result"):
            if self._redis_enabled:
                result_str = await self.redis.get(f"sync:{tenant_id}:latest_result")
                return json.loads(result_str) if result_str else None
            return self._read_json(self._path(f"latest_sync_{tenant_id}.json"), None)

    # Activity trail

    async def append_activity(self, tenant_id: str, record: Dict[str, Any]) -> None:
        """Append an activity record to the tenant's trail"""
        with self._store_errors("append_activity"):
            if self._redis_enabled:
                await self.redis.lpush(f"activity:{tenant_id}", json.dumps(record, default=str))
                await self.redis.ltrim(f"activity:{tenant_id}", 0, self.history_limit - 1)
            else:
                path = self._path(f"activity_{tenant_id}.json")
                records = self._read_json(path, [])
                records.insert(0, record)
                self._write_json(path, records[:self.history_limit])

    async def get_activity(self, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Get the most recent activity records, newest first"""
        with self._store_errors("get_activity"):
            if self._redis_enabled:
                records = await self.redis.lrange(f"activity:{tenant_id}", 0, limit - 1)
                return [json.loads(record) for record in records]
            return self._read_json(self._path(f"activity_{tenant_id}.json"), [])[:limit]

    # Account tokens

    async def get_account_tokens(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get the stored (encrypted) tokens of a connected account"""
        with self._store_errors("get_account_tokens"):
            if self._redis_enabled:
                data = await self.redis.get(f"auth:tokens:{user_id}")
                return json.loads(data) if data else None
            return self._read_json(self._path("tokens", f"{user_id}.json"), None)

    async def save_account_tokens(self, user_id: str, tokens: Dict[str, Any]) -> None:
        """Save the (encrypted) tokens of a connected account"""
        with self._store_errors("save_account_tokens"):
            if self._redis_enabled:
                await self.redis.set(f"auth:tokens:{user_id}", json.dumps(tokens, default=str))
            else:
                self._write_json(self._path("tokens", f"{user_id}.json"), tokens)

    async def delete_account_tokens(self, user_id: str) -> None:
        """Remove the tokens of a connected account"""
        with self._store_errors("delete_account_tokens"):
            if self._redis_enabled:
                await self.redis.delete(f"auth:tokens:{user_id}")
            else:
                path = self._path("tokens", f"{user_id}.json")
                if os.path.exists(path):
                    os.remove(path)
