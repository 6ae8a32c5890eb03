from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from tokenguard.logging import get_logger
from tokenguard.service.errors import SessionNotFound
from tokenguard.service.security_events import UserActivityLog
from tokenguard.storage.cache import CacheBackend, CacheOp
from tokenguard.storage.models import SessionRecord, utcnow

logger = get_logger(__name__)


class SessionStore:
    """TTL-bound session records keyed by session id.

    Sessions are also indexed per user so a logout-everywhere can find them.
    There are no cross-session invariants beyond expiry.
    """

    def __init__(
        self,
        cache: CacheBackend,
        namespace: str = "tokenguard",
        *,
        default_ttl: int = 86400,
        clock: Callable[[], datetime] = utcnow,
        activity: Optional[UserActivityLog] = None,
    ) -> None:
        self.cache = cache
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._now = clock
        self.activity = activity

    def _key(self, session_id: str) -> str:
        return f"{self.namespace}:session:{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.namespace}:user_sessions:{user_id}"

    def _remaining_ttl(self, record: SessionRecord) -> int:
        return max(1, int((record.expires_at - self._now()).total_seconds()))

    async def create_session(
        self,
        session_id: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
    ) -> SessionRecord:
        ttl_seconds = ttl or self.default_ttl
        now = self._now()
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            metadata=dict(metadata or {}),
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        user_key = self._user_key(user_id)
        await self.cache.pipeline(
            [
                CacheOp.of("set_with_ttl", self._key(session_id), record.to_json(), ttl_seconds),
                CacheOp.of("set_add", user_key, session_id),
            ]
        )
        # The index must outlive the longest session it lists
        await self.cache.extend_expire(user_key, ttl_seconds)
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.cache.get(self._key(session_id))
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Corrupted cache entry - treat as a miss
            logger.warning("session_record_corrupt", session_id=session_id)
            return None

    async def _save(self, record: SessionRecord) -> None:
        await self.cache.set_with_ttl(
            self._key(record.session_id), record.to_json(), self._remaining_ttl(record)
        )

    async def update_session(
        self, session_id: str, partial_metadata: Dict[str, Any]
    ) -> SessionRecord:
        """Merge ``partial_metadata`` into the session, keeping its expiry."""
        record = await self.get_session(session_id)
        if record is None:
            raise SessionNotFound(
                "session not found", detail={"session_id": session_id}
            )
        record.metadata.update(partial_metadata)
        record.last_activity = self._now()
        await self._save(record)
        return record

    async def touch_session(
        self,
        session_id: str,
        activity: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SessionRecord]:
        """Record activity on the session without changing its metadata.

        A named ``activity`` is also appended to the user's activity log when
        one is configured.
        """
        record = await self.get_session(session_id)
        if record is None:
            return None
        record.last_activity = self._now()
        await self._save(record)
        if activity and self.activity is not None:
            await self.activity.track_user_activity(
                record.user_id, activity, {"session_id": session_id, **(metadata or {})}
            )
        return record

    async def destroy_session(self, session_id: str) -> bool:
        record = await self.get_session(session_id)
        ops = [CacheOp.of("delete", self._key(session_id))]
        if record is not None:
            ops.append(CacheOp.of("set_remove", self._user_key(record.user_id), session_id))
        deleted = (await self.cache.pipeline(ops))[0]
        if deleted:
            logger.info("session_destroyed", session_id=session_id)
        return bool(deleted)

    async def destroy_all_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Destroy every session of ``user_id``, optionally keeping one.

        Returns the number of session records actually removed.
        """
        user_key = self._user_key(user_id)
        session_ids = await self.cache.set_members(user_key)
        targets = [sid for sid in session_ids if sid != except_session_id]
        if not targets:
            return 0
        ops = [CacheOp.of("delete", self._key(sid)) for sid in targets]
        ops.append(CacheOp.of("set_remove", user_key, *targets))
        results = await self.cache.pipeline(ops)
        revoked = sum(int(count) for count in results[:-1])
        logger.info(
            "user_sessions_destroyed",
            user_id=user_id,
            revoked=revoked,
            kept=except_session_id,
        )
        return revoked
