from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from tokenguard.storage.cache import CacheOp, SwapResult

_Value = Union[str, set, list]


class MemoryCache:
    """Process-local cache honouring the backend contract, for tests and dev fallback.

    Keys expire lazily on access. Every public operation runs under one lock,
    so a pipeline or swap is atomic with respect to other callers in the
    same process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, _Value] = {}
        self._expiry: Dict[str, float] = {}
        # RLock so pipeline() can reuse the single-op helpers
        self._lock = threading.RLock()

    # -- internals ---------------------------------------------------------

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _lookup(self, key: str, kind: type) -> Optional[Any]:
        self._purge_if_expired(key)
        value = self._data.get(key)
        if value is None:
            return None
        if not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return value

    def _set_ttl(self, key: str, ttl_seconds: int) -> None:
        self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    def _get(self, key: str) -> Optional[str]:
        return self._lookup(key, str)

    def _set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = str(value)
        self._set_ttl(key, ttl_seconds)

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge_if_expired(key)
            if self._data.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
        return removed

    def _exists(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._data

    def _increment(self, key: str) -> int:
        current = self._lookup(key, str)
        try:
            value = int(current) + 1 if current is not None else 1
        except ValueError as exc:
            raise TypeError(f"value at {key!r} is not an integer") from exc
        self._data[key] = str(value)
        return value

    def _expire(self, key: str, ttl_seconds: int) -> bool:
        if not self._exists(key):
            return False
        self._set_ttl(key, ttl_seconds)
        return True

    def _extend_expire(self, key: str, ttl_seconds: int) -> bool:
        if not self._exists(key):
            return False
        deadline = self._expiry.get(key)
        if deadline is not None and deadline >= self._clock() + ttl_seconds:
            return False
        self._set_ttl(key, ttl_seconds)
        return True

    def _set_add(self, key: str, *members: str) -> int:
        current = self._lookup(key, set)
        if current is None:
            current = set()
            self._data[key] = current
        before = len(current)
        current.update(members)
        return len(current) - before

    def _set_remove(self, key: str, *members: str) -> int:
        current = self._lookup(key, set)
        if current is None:
            return 0
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            self._delete(key)
        return removed

    def _set_members(self, key: str) -> set[str]:
        current = self._lookup(key, set)
        return set(current) if current else set()

    def _list_push(self, key: str, *values: str) -> int:
        current = self._lookup(key, list)
        if current is None:
            current = []
            self._data[key] = current
        for value in values:
            current.insert(0, value)
        return len(current)

    @staticmethod
    def _slice_bounds(length: int, start: int, stop: int) -> tuple[int, int]:
        # Redis semantics: inclusive stop, negative indexes from the tail
        if start < 0:
            start = max(0, length + start)
        if stop < 0:
            stop = length + stop
        return start, min(stop, length - 1) + 1

    def _list_trim(self, key: str, start: int, stop: int) -> None:
        current = self._lookup(key, list)
        if current is None:
            return
        lo, hi = self._slice_bounds(len(current), start, stop)
        kept = current[lo:hi] if lo < hi else []
        if kept:
            self._data[key] = kept
        else:
            self._delete(key)

    def _list_range(self, key: str, start: int, stop: int) -> List[str]:
        current = self._lookup(key, list)
        if not current:
            return []
        lo, hi = self._slice_bounds(len(current), start, stop)
        return list(current[lo:hi]) if lo < hi else []

    # -- contract ----------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get(key)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set_with_ttl(key, value, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        with self._lock:
            return self._delete(*keys)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._exists(key)

    async def increment(self, key: str) -> int:
        with self._lock:
            return self._increment(key)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            return self._expire(key, ttl_seconds)

    async def extend_expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            return self._extend_expire(key, ttl_seconds)

    async def set_add(self, key: str, *members: str) -> int:
        with self._lock:
            return self._set_add(key, *members)

    async def set_remove(self, key: str, *members: str) -> int:
        with self._lock:
            return self._set_remove(key, *members)

    async def set_members(self, key: str) -> set[str]:
        with self._lock:
            return self._set_members(key)

    async def list_push(self, key: str, *values: str) -> int:
        with self._lock:
            return self._list_push(key, *values)

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        with self._lock:
            self._list_trim(key, start, stop)

    async def list_range(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            return self._list_range(key, start, stop)

    async def pipeline(self, ops: Sequence[CacheOp]) -> List[Any]:
        """Run ``ops`` atomically with MULTI/EXEC error semantics.

        As in Redis, an op that fails at run time (WRONGTYPE, non-integer
        increment) does not stop or undo the others. Once every op has run
        the first such error is raised, matching the Redis adapter.
        """
        results: List[Any] = []
        first_error: Optional[TypeError] = None
        with self._lock:
            for op in ops:
                try:
                    results.append(getattr(self, f"_{op.name}")(*op.args))
                except TypeError as exc:
                    results.append(exc)
                    first_error = first_error or exc
        if first_error is not None:
            raise first_error
        return results

    async def swap_set_member(
        self, set_key: str, guard_key: str, old: str, new: str, ttl_seconds: int
    ) -> SwapResult:
        with self._lock:
            if self._exists(guard_key):
                return SwapResult.GUARDED
            if not self._set_remove(set_key, old):
                return SwapResult.MISSING
            self._set_add(set_key, new)
            self._set_ttl(set_key, ttl_seconds)
            return SwapResult.SWAPPED

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._data.clear()
            self._expiry.clear()

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, or None for a missing or persistent key."""
        with self._lock:
            self._purge_if_expired(key)
            deadline = self._expiry.get(key)
            if key not in self._data or deadline is None:
                return None
            return deadline - self._clock()
