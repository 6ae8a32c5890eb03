from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from tokenguard.logging import get_logger
from tokenguard.storage.cache import CacheBackend, CacheOp
from tokenguard.storage.models import SecurityEvent, SecurityEventType, UserActivity, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class _CappedUserLog:
    """Newest-first list per user, trimmed to ``max_entries`` on every append."""

    kind = "entries"

    def __init__(
        self,
        cache: CacheBackend,
        namespace: str = "tokenguard",
        *,
        max_entries: int,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.namespace = namespace
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._now = clock

    def _key(self, user_id: str) -> str:
        return f"{self.namespace}:{self.kind}:{user_id}"

    async def _append(self, user_id: str, raw: str) -> None:
        key = self._key(user_id)
        await self.cache.pipeline(
            [
                CacheOp.of("list_push", key, raw),
                CacheOp.of("list_trim", key, 0, self.max_entries - 1),
                CacheOp.of("expire", key, self.ttl_seconds),
            ]
        )

    async def _read(self, user_id: str, limit: int, parse: Callable[[str], T]) -> List[T]:
        if limit <= 0:
            return []
        entries: List[T] = []
        for raw in await self.cache.list_range(self._key(user_id), 0, limit - 1):
            try:
                entries.append(parse(raw))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning("user_log_entry_corrupt", user_id=user_id, log=self.kind)
        return entries


class SecurityEventLog(_CappedUserLog):
    """Capped, newest-first audit trail of security events per user.

    Advisory only: nothing here gates access decisions.
    """

    kind = "security:events"

    def __init__(
        self,
        cache: CacheBackend,
        namespace: str = "tokenguard",
        *,
        max_entries: int = 50,
        ttl_seconds: int = 90 * 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(
            cache, namespace, max_entries=max_entries, ttl_seconds=ttl_seconds, clock=clock
        )

    async def log_security_event(
        self,
        user_id: str,
        event: SecurityEventType | str,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        record = SecurityEvent(
            user_id=user_id,
            event_type=SecurityEventType(event),
            timestamp=self._now(),
            details=dict(details or {}),
        )
        await self._append(user_id, record.to_json())
        return record

    async def get_security_events(self, user_id: str, limit: int = 10) -> List[SecurityEvent]:
        return await self._read(user_id, limit, SecurityEvent.from_json)


class UserActivityLog(_CappedUserLog):
    """Recent free-form activity per user (page views, session touches, ...)."""

    kind = "user:activity"

    def __init__(
        self,
        cache: CacheBackend,
        namespace: str = "tokenguard",
        *,
        max_entries: int = 100,
        ttl_seconds: int = 30 * 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(
            cache, namespace, max_entries=max_entries, ttl_seconds=ttl_seconds, clock=clock
        )

    async def track_user_activity(
        self, user_id: str, activity: str, metadata: Optional[Dict[str, Any]] = None
    ) -> UserActivity:
        record = UserActivity(
            user_id=user_id,
            activity=activity,
            timestamp=self._now(),
            metadata=dict(metadata or {}),
        )
        await self._append(user_id, record.to_json())
        return record

    async def get_user_activity(self, user_id: str, limit: int = 10) -> List[UserActivity]:
        return await self._read(user_id, limit, UserActivity.from_json)
