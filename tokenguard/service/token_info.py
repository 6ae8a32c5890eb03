from __future__ import annotations

import json
import time
from typing import Optional

from tokenguard.logging import get_logger
from tokenguard.storage.cache import CacheBackend, CacheOp, ttl_seconds_until
from tokenguard.storage.models import CachedTokenInfo, TokenClaims

logger = get_logger(__name__)


class TokenInfoCache:
    """Claims of issued tokens keyed by token id, kept for each token's lifetime.

    Used for introspection only. Revocation is decided by the blacklist and
    the family registry, never by the presence of an entry here.
    """

    def __init__(self, cache: CacheBackend, namespace: str = "tokenguard") -> None:
        self.cache = cache
        self.namespace = namespace

    def _key(self, token_id: str) -> str:
        return f"{self.namespace}:jwt:{token_id}"

    async def store(self, *claims: TokenClaims, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        ops = [
            CacheOp.of(
                "set_with_ttl",
                self._key(c.token_id),
                CachedTokenInfo(claims=c, cached_at=int(now)).to_json(),
                ttl_seconds_until(c.expires_at, now),
            )
            for c in claims
            if c.expires_at > now
        ]
        if ops:
            await self.cache.pipeline(ops)
        return len(ops)

    async def get(self, token_id: str) -> Optional[CachedTokenInfo]:
        raw = await self.cache.get(self._key(token_id))
        if not raw:
            return None
        try:
            return CachedTokenInfo.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("token_info_corrupt", token_id=token_id)
            return None

    async def forget(self, *token_ids: str) -> int:
        if not token_ids:
            return 0
        return await self.cache.delete(*(self._key(token_id) for token_id in token_ids))
