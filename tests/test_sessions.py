"""Tests for the session store."""

from datetime import datetime, timedelta, timezone

import pytest

from tokenguard.service.errors import SessionNotFound
from tokenguard.service.security_events import UserActivityLog
from tokenguard.service.sessions import SessionStore
from tokenguard.storage.memory import MemoryCache

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Drives both the cache (epoch seconds) and the store (datetimes)."""

    def __init__(self):
        self.offset = 0.0

    def epoch(self) -> float:
        return START.timestamp() + self.offset

    def utc(self) -> datetime:
        return START + timedelta(seconds=self.offset)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.epoch)


@pytest.fixture
def store(cache, clock):
    return SessionStore(cache, "test", default_ttl=3600, clock=clock.utc)


class TestSessionLifecycle:
    async def test_create_and_get(self, store):
        created = await store.create_session("s1", "u1", {"ip": "10.0.0.1"})

        fetched = await store.get_session("s1")

        assert fetched.user_id == "u1"
        assert fetched.metadata == {"ip": "10.0.0.1"}
        assert fetched.expires_at == created.expires_at == START + timedelta(hours=1)

    async def test_session_expires(self, store, clock):
        await store.create_session("s1", "u1", ttl=60)

        clock.offset = 61

        assert await store.get_session("s1") is None

    async def test_update_merges_metadata(self, store, clock):
        await store.create_session("s1", "u1", {"ip": "10.0.0.1", "device": "web"})
        clock.offset = 100

        updated = await store.update_session("s1", {"device": "mobile", "mfa": True})

        assert updated.metadata == {"ip": "10.0.0.1", "device": "mobile", "mfa": True}
        assert updated.last_activity == START + timedelta(seconds=100)
        fetched = await store.get_session("s1")
        assert fetched.metadata["device"] == "mobile"

    async def test_update_keeps_original_expiry(self, store, cache, clock):
        await store.create_session("s1", "u1")
        clock.offset = 600

        await store.update_session("s1", {"k": "v"})

        assert cache.ttl("test:session:s1") == pytest.approx(3000)

    async def test_update_missing_session(self, store):
        with pytest.raises(SessionNotFound) as exc_info:
            await store.update_session("missing", {"k": "v"})
        assert exc_info.value.status_code == 404

    async def test_touch(self, store, clock):
        await store.create_session("s1", "u1")
        clock.offset = 30

        touched = await store.touch_session("s1")

        assert touched.last_activity == START + timedelta(seconds=30)
        assert await store.touch_session("missing") is None

    async def test_touch_records_named_activity(self, cache, clock):
        activity = UserActivityLog(cache, "test")
        store = SessionStore(
            cache, "test", default_ttl=3600, clock=clock.utc, activity=activity
        )
        await store.create_session("s1", "u1")

        await store.touch_session("s1")
        await store.touch_session("s1", "opened_lesson", {"lesson": "l7"})

        entries = await activity.get_user_activity("u1")
        assert [e.activity for e in entries] == ["opened_lesson"]
        assert entries[0].metadata == {"session_id": "s1", "lesson": "l7"}

    async def test_destroy(self, store):
        await store.create_session("s1", "u1")

        assert await store.destroy_session("s1") is True
        assert await store.get_session("s1") is None
        assert await store.destroy_session("s1") is False

    async def test_corrupt_record_is_miss(self, store, cache):
        await cache.set_with_ttl("test:session:s1", "not json", 60)

        assert await store.get_session("s1") is None


class TestDestroyAllUserSessions:
    async def test_destroys_every_session(self, store):
        for sid in ("s1", "s2", "s3"):
            await store.create_session(sid, "u1")
        await store.create_session("other", "u2")

        assert await store.destroy_all_user_sessions("u1") == 3

        for sid in ("s1", "s2", "s3"):
            assert await store.get_session(sid) is None
        assert await store.get_session("other") is not None

    async def test_keeps_current_session(self, store):
        for sid in ("s1", "s2"):
            await store.create_session(sid, "u1")

        assert await store.destroy_all_user_sessions("u1", except_session_id="s2") == 1

        assert await store.get_session("s1") is None
        assert await store.get_session("s2") is not None

    async def test_no_sessions(self, store):
        assert await store.destroy_all_user_sessions("nobody") == 0

    async def test_short_session_keeps_index_of_longer_one(self, store, cache, clock):
        """Index expiry follows the longest-lived session, not the latest."""
        await store.create_session("long", "u1", ttl=7200)
        await store.create_session("short", "u1", ttl=60)

        assert cache.ttl("test:user_sessions:u1") == 7200

        clock.offset = 61
        assert await store.get_session("short") is None
        assert await store.destroy_all_user_sessions("u1") == 1
        assert await store.get_session("long") is None
