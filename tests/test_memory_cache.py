"""Tests for the in-memory cache backend."""

import pytest

from tokenguard.storage.cache import CacheOp, SwapResult, ttl_seconds_until
from tokenguard.storage.memory import MemoryCache


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestKeyValue:
    async def test_set_get_and_expire(self, cache, clock):
        await cache.set_with_ttl("k", "v", 10)
        assert await cache.get("k") == "v"

        clock.now = 10
        assert await cache.get("k") is None
        assert await cache.exists("k") is False

    async def test_delete_counts_existing_keys(self, cache):
        await cache.set_with_ttl("a", "1", 10)
        await cache.set_with_ttl("b", "2", 10)

        assert await cache.delete("a", "b", "c") == 2

    async def test_increment(self, cache):
        assert await cache.increment("n") == 1
        assert await cache.increment("n") == 2
        assert await cache.get("n") == "2"

    async def test_expire_missing_key(self, cache, clock):
        assert await cache.expire("missing", 5) is False

        await cache.increment("n")
        assert await cache.expire("n", 5) is True
        assert cache.ttl("n") == 5

    async def test_wrong_type(self, cache):
        await cache.set_add("s", "a")

        with pytest.raises(TypeError):
            await cache.get("s")


class TestSetsAndLists:
    async def test_set_operations(self, cache):
        assert await cache.set_add("s", "a", "b", "a") == 2
        assert await cache.set_members("s") == {"a", "b"}
        assert await cache.set_remove("s", "a", "z") == 1
        assert await cache.set_remove("s", "b") == 1
        assert await cache.exists("s") is False

    async def test_list_newest_first_and_trim(self, cache):
        for value in ("1", "2", "3", "4"):
            await cache.list_push("l", value)

        await cache.list_trim("l", 0, 2)

        assert await cache.list_range("l", 0, -1) == ["4", "3", "2"]
        assert await cache.list_range("l", 0, 0) == ["4"]
        assert await cache.list_range("l", 5, 10) == []


class TestPipelineAndSwap:
    async def test_pipeline_returns_results_in_order(self, cache):
        results = await cache.pipeline(
            [
                CacheOp.of("set_with_ttl", "k", "v", 10),
                CacheOp.of("get", "k"),
                CacheOp.of("set_add", "s", "a"),
                CacheOp.of("exists", "missing"),
            ]
        )

        assert results == [None, "v", 1, False]

    async def test_pipeline_error_does_not_stop_later_ops(self, cache):
        """A failing op is reported after the rest of the batch has run."""
        await cache.set_with_ttl("str", "v", 10)

        with pytest.raises(TypeError):
            await cache.pipeline(
                [
                    CacheOp.of("set_with_ttl", "before", "1", 10),
                    CacheOp.of("set_add", "str", "member"),
                    CacheOp.of("set_with_ttl", "after", "2", 10),
                ]
            )

        assert await cache.get("before") == "1"
        assert await cache.get("after") == "2"
        assert await cache.get("str") == "v"

    async def test_extend_expire_only_lengthens(self, cache, clock):
        assert await cache.extend_expire("missing", 60) is False

        await cache.set_add("idx", "a")
        assert await cache.extend_expire("idx", 100) is True
        assert cache.ttl("idx") == 100

        assert await cache.extend_expire("idx", 30) is False
        assert cache.ttl("idx") == 100

        clock.now = 90
        assert await cache.extend_expire("idx", 30) is True
        assert cache.ttl("idx") == 30

    def test_unknown_pipeline_op_rejected(self):
        with pytest.raises(ValueError):
            CacheOp.of("flushall")

    async def test_swap_member(self, cache):
        await cache.set_add("valid", "old")

        assert await cache.swap_set_member("valid", "guard", "old", "new", 60) is SwapResult.SWAPPED
        assert await cache.set_members("valid") == {"new"}
        assert cache.ttl("valid") == 60

    async def test_swap_missing_member(self, cache):
        await cache.set_add("valid", "current")

        result = await cache.swap_set_member("valid", "guard", "old", "new", 60)

        assert result is SwapResult.MISSING
        assert await cache.set_members("valid") == {"current"}

    async def test_swap_guarded(self, cache):
        await cache.set_add("valid", "old")
        await cache.set_with_ttl("guard", "1", 60)

        result = await cache.swap_set_member("valid", "guard", "old", "new", 60)

        assert result is SwapResult.GUARDED
        assert await cache.set_members("valid") == {"old"}


def test_ttl_seconds_until_clamps():
    assert ttl_seconds_until(100.0, 40.0) == 60
    assert ttl_seconds_until(100.0, 99.9) == 1
