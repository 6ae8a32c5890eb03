from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis

from tokenguard.storage.cache import CacheOp, SwapResult


def _bool(value: Any) -> bool:
    return bool(int(value)) if value is not None else False


class RedisCache:
    """Thin async Redis adapter implementing the cache backend contract."""

    DEFAULT_OPERATION_TIMEOUT = 0.25

    # Conditional swap of one member in a set, guarded by a flag key. Runs
    # server-side so concurrent rotations across processes serialise here.
    _SWAP_MEMBER_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
  return 'guarded'
end
if redis.call('SREM', KEYS[1], ARGV[1]) == 0 then
  return 'missing'
end
redis.call('SADD', KEYS[1], ARGV[2])
redis.call('EXPIRE', KEYS[1], ARGV[3])
return 'swapped'
"""

    # Only ever lengthens a key's lifetime. TTL is -1 for a persistent key
    # and -2 for a missing one.
    _EXTEND_EXPIRE_SCRIPT = """
local current = redis.call('TTL', KEYS[1])
if current == -2 then
  return 0
end
if current == -1 or current < tonumber(ARGV[1]) then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._swap_member = self.client.register_script(self._SWAP_MEMBER_SCRIPT)
        self._extend_expire = self.client.register_script(self._EXTEND_EXPIRE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=max(self.socket_timeout, 1.0),
            socket_connect_timeout=max(self.socket_timeout, 1.0),
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return _bool(await self.client.exists(key))

    async def increment(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, max(1, int(ttl_seconds))))

    async def extend_expire(self, key: str, ttl_seconds: int) -> bool:
        return _bool(await self._extend_expire(keys=[key], args=[max(1, int(ttl_seconds))]))

    async def set_add(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.sadd(key, *members))

    async def set_remove(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.srem(key, *members))

    async def set_members(self, key: str) -> set[str]:
        return set(await self.client.smembers(key))

    async def list_push(self, key: str, *values: str) -> int:
        if not values:
            return 0
        return int(await self.client.lpush(key, *values))

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        await self.client.ltrim(key, start, stop)

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self.client.lrange(key, start, stop))

    async def pipeline(self, ops: Sequence[CacheOp]) -> list[Any]:
        """Queue every op on one MULTI/EXEC pipeline and run it in a single round trip."""
        if not ops:
            return []
        pipe = self.client.pipeline(transaction=True)
        converters: list[Callable[[Any], Any]] = []
        for op in ops:
            queue, convert = self._PIPELINE_DISPATCH[op.name]
            queue(pipe, *op.args)
            converters.append(convert)
        raw = await pipe.execute()
        return [convert(value) for convert, value in zip(converters, raw)]

    async def swap_set_member(
        self, set_key: str, guard_key: str, old: str, new: str, ttl_seconds: int
    ) -> SwapResult:
        result = await self._swap_member(
            keys=[set_key, guard_key], args=[old, new, max(1, int(ttl_seconds))]
        )
        return SwapResult(result)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    _PIPELINE_DISPATCH: Dict[str, tuple[Callable[..., Any], Callable[[Any], Any]]] = {
        "get": (lambda p, k: p.get(k), lambda v: v),
        "set_with_ttl": (lambda p, k, v, ttl: p.set(k, v, ex=max(1, int(ttl))), lambda v: None),
        "delete": (lambda p, *keys: p.delete(*keys), int),
        "exists": (lambda p, k: p.exists(k), _bool),
        "increment": (lambda p, k: p.incr(k), int),
        "expire": (lambda p, k, ttl: p.expire(k, max(1, int(ttl))), bool),
        "set_add": (lambda p, k, *m: p.sadd(k, *m), int),
        "set_remove": (lambda p, k, *m: p.srem(k, *m), int),
        "set_members": (lambda p, k: p.smembers(k), set),
        "list_push": (lambda p, k, *v: p.lpush(k, *v), int),
        "list_trim": (lambda p, k, start, stop: p.ltrim(k, start, stop), lambda v: None),
        "list_range": (lambda p, k, start, stop: p.lrange(k, start, stop), list),
    }
