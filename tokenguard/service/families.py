from __future__ import annotations

from typing import Iterable, List, Optional

from tokenguard.logging import get_logger
from tokenguard.storage.cache import CacheBackend, CacheOp, SwapResult
from tokenguard.storage.models import FamilyRecord, IssuedToken

logger = get_logger(__name__)


class TokenFamilyRegistry:
    """Per-lineage record of valid refresh token ids.

    Layout per family:
    - ``family:{id}:valid``   set of refresh ids that may still be rotated
    - ``family:{id}:issued``  set of ``token_id:exp`` for every token minted
    - ``family:{id}:revoked`` flag; once present the family never rotates again

    Only TokenService mutates these keys.
    """

    def __init__(self, cache: CacheBackend, namespace: str = "tokenguard") -> None:
        self.cache = cache
        self.namespace = namespace

    def valid_key(self, family_id: str) -> str:
        return f"{self.namespace}:family:{family_id}:valid"

    def issued_key(self, family_id: str) -> str:
        return f"{self.namespace}:family:{family_id}:issued"

    def revoked_key(self, family_id: str) -> str:
        return f"{self.namespace}:family:{family_id}:revoked"

    async def register(
        self,
        family_id: str,
        refresh_token_id: str,
        issued: Iterable[IssuedToken],
        ttl_seconds: int,
    ) -> None:
        issued_members = [token.encode() for token in issued]
        await self.cache.pipeline(
            [
                CacheOp.of("set_add", self.valid_key(family_id), refresh_token_id),
                CacheOp.of("expire", self.valid_key(family_id), ttl_seconds),
                CacheOp.of("set_add", self.issued_key(family_id), *issued_members),
                CacheOp.of("expire", self.issued_key(family_id), ttl_seconds),
            ]
        )

    async def get(self, family_id: str) -> Optional[FamilyRecord]:
        valid, issued, revoked = await self.cache.pipeline(
            [
                CacheOp.of("set_members", self.valid_key(family_id)),
                CacheOp.of("set_members", self.issued_key(family_id)),
                CacheOp.of("exists", self.revoked_key(family_id)),
            ]
        )
        if not valid and not revoked:
            return None
        return FamilyRecord(
            family_id=family_id,
            valid_token_ids=set(valid),
            revoked=bool(revoked),
            issued=self._decode_issued(issued),
        )

    async def rotate(
        self, family_id: str, old_token_id: str, new_token_id: str, ttl_seconds: int
    ) -> SwapResult:
        """Atomically retire ``old_token_id`` and admit ``new_token_id``."""
        return await self.cache.swap_set_member(
            self.valid_key(family_id),
            self.revoked_key(family_id),
            old_token_id,
            new_token_id,
            ttl_seconds,
        )

    async def track_issued(
        self, family_id: str, issued: Iterable[IssuedToken], ttl_seconds: int
    ) -> None:
        members = [token.encode() for token in issued]
        if not members:
            return
        await self.cache.pipeline(
            [
                CacheOp.of("set_add", self.issued_key(family_id), *members),
                CacheOp.of("expire", self.issued_key(family_id), ttl_seconds),
            ]
        )

    async def revoke(self, family_id: str, ttl_seconds: int) -> List[IssuedToken]:
        """Mark the family revoked and return every token it ever issued.

        The flag is written before the valid set is dropped, in one
        transaction, so a concurrent rotation either sees the flag or finds
        its token already gone.
        """
        _, _, issued = await self.cache.pipeline(
            [
                CacheOp.of("set_with_ttl", self.revoked_key(family_id), "1", ttl_seconds),
                CacheOp.of("delete", self.valid_key(family_id)),
                CacheOp.of("set_members", self.issued_key(family_id)),
            ]
        )
        return self._decode_issued(issued)

    @staticmethod
    def _decode_issued(raw_members: Iterable[str]) -> List[IssuedToken]:
        decoded = []
        for raw in raw_members:
            token = IssuedToken.decode(raw)
            if token is None:
                logger.warning("family_issued_entry_invalid", entry=raw)
                continue
            decoded.append(token)
        decoded.sort(key=lambda token: token.expires_at)
        return decoded
