from __future__ import annotations

import json
import math
import time
from typing import Dict, Iterable, List, Optional, Tuple

from tokenguard.logging import get_logger
from tokenguard.storage.cache import CacheBackend, CacheOp, ttl_seconds_until

logger = get_logger(__name__)


class BlacklistStore:
    """Revoked token ids, each kept only as long as the token itself would live."""

    def __init__(self, cache: CacheBackend, namespace: str = "tokenguard") -> None:
        self.cache = cache
        self.namespace = namespace

    def _key(self, token_id: str) -> str:
        return f"{self.namespace}:blacklist:{token_id}"

    @staticmethod
    def _live(expires_at: float, now: float) -> bool:
        if not math.isfinite(expires_at):
            raise ValueError(f"blacklist expiry must be finite, got {expires_at!r}")
        return expires_at > now

    @staticmethod
    def _entry(reason: str, now: float, expires_at: float) -> str:
        return json.dumps(
            {"reason": reason, "blacklisted_at": int(now), "expires_at": int(expires_at)},
            separators=(",", ":"),
        )

    async def add(
        self,
        token_id: str,
        expires_at: float,
        *,
        reason: str = "logout",
        now: Optional[float] = None,
    ) -> bool:
        """Blacklist ``token_id`` until ``expires_at``.

        Returns False without writing when the token has already expired,
        since an expired token is rejected by signature checks anyway.
        """
        now = time.time() if now is None else now
        if not self._live(expires_at, now):
            return False
        await self.cache.set_with_ttl(
            self._key(token_id),
            self._entry(reason, now, expires_at),
            ttl_seconds_until(expires_at, now),
        )
        logger.info("token_blacklisted", token_id=token_id, reason=reason)
        return True

    async def add_many(
        self,
        entries: Iterable[Tuple[str, float]],
        *,
        reason: str = "batch_logout",
        now: Optional[float] = None,
    ) -> int:
        """Blacklist several (token_id, expires_at) pairs in one round trip."""
        now = time.time() if now is None else now
        ops: List[CacheOp] = [
            CacheOp.of(
                "set_with_ttl",
                self._key(token_id),
                self._entry(reason, now, expires_at),
                ttl_seconds_until(expires_at, now),
            )
            for token_id, expires_at in entries
            if self._live(expires_at, now)
        ]
        if not ops:
            return 0
        await self.cache.pipeline(ops)
        logger.info("tokens_blacklisted", count=len(ops), reason=reason)
        return len(ops)

    async def contains(self, token_id: str) -> bool:
        return await self.cache.exists(self._key(token_id))

    async def contains_many(self, token_ids: Iterable[str]) -> Dict[str, bool]:
        ids = list(token_ids)
        if not ids:
            return {}
        results = await self.cache.pipeline(
            [CacheOp.of("exists", self._key(token_id)) for token_id in ids]
        )
        return {token_id: bool(hit) for token_id, hit in zip(ids, results)}

    async def get_entry(self, token_id: str) -> Optional[dict]:
        raw = await self.cache.get(self._key(token_id))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry still counts as blacklisted via contains()
            return None
