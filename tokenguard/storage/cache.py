from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

# Operation names a pipeline may carry; each maps to a CacheBackend method.
PIPELINE_OPS = frozenset(
    {
        "get",
        "set_with_ttl",
        "delete",
        "exists",
        "increment",
        "expire",
        "set_add",
        "set_remove",
        "set_members",
        "list_push",
        "list_trim",
        "list_range",
    }
)


class SwapResult(str, Enum):
    """Outcome of a conditional set-member swap."""

    SWAPPED = "swapped"
    MISSING = "missing"  # old member already gone; nothing written
    GUARDED = "guarded"  # guard key present; nothing written


@dataclass(frozen=True)
class CacheOp:
    name: str
    args: tuple

    @classmethod
    def of(cls, name: str, *args: Any) -> "CacheOp":
        if name not in PIPELINE_OPS:
            raise ValueError(f"unsupported pipeline operation: {name}")
        return cls(name=name, args=args)


class CacheBackend(Protocol):
    """Operation contract every cache backend honours.

    Values are strings; callers serialise structured data themselves.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def extend_expire(self, key: str, ttl_seconds: int) -> bool:
        """Set the expiry unless the key already lives longer; False if missing."""
        ...

    async def set_add(self, key: str, *members: str) -> int: ...

    async def set_remove(self, key: str, *members: str) -> int: ...

    async def set_members(self, key: str) -> set[str]: ...

    async def list_push(self, key: str, *values: str) -> int: ...

    async def list_trim(self, key: str, start: int, stop: int) -> None: ...

    async def list_range(self, key: str, start: int, stop: int) -> list[str]: ...

    async def pipeline(self, ops: Sequence[CacheOp]) -> list[Any]: ...

    async def swap_set_member(
        self, set_key: str, guard_key: str, old: str, new: str, ttl_seconds: int
    ) -> SwapResult: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def ttl_seconds_until(expires_at: float, now: float) -> int:
    """Remaining lifetime in whole seconds, clamped to at least 1.

    Redis rejects zero or negative expiries, so callers that already know the
    deadline has passed should skip the write instead.
    """

    return max(1, int(expires_at - now))
