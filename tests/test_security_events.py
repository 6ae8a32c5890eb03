"""Tests for the per-user security event log."""

from datetime import datetime, timezone

import pytest

from tokenguard.service.security_events import SecurityEventLog, UserActivityLog
from tokenguard.storage.memory import MemoryCache
from tokenguard.storage.models import SecurityEventType


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def log(cache):
    return SecurityEventLog(cache, "test", max_entries=5)


class TestSecurityEventLog:
    async def test_newest_first(self, log):
        await log.log_security_event("u1", SecurityEventType.LOGIN, {"ip": "10.0.0.1"})
        await log.log_security_event("u1", "token_refresh")

        events = await log.get_security_events("u1")

        assert [e.event_type for e in events] == [
            SecurityEventType.TOKEN_REFRESH,
            SecurityEventType.LOGIN,
        ]
        assert events[1].details == {"ip": "10.0.0.1"}
        assert events[0].timestamp.tzinfo is not None

    async def test_capped_length(self, log):
        for i in range(8):
            await log.log_security_event("u1", SecurityEventType.LOGIN, {"n": i})

        events = await log.get_security_events("u1", limit=50)

        assert len(events) == 5
        assert [e.details["n"] for e in events] == [7, 6, 5, 4, 3]

    async def test_limit(self, log):
        for i in range(4):
            await log.log_security_event("u1", SecurityEventType.LOGIN, {"n": i})

        assert len(await log.get_security_events("u1", limit=2)) == 2
        assert await log.get_security_events("u1", limit=0) == []

    async def test_users_isolated(self, log):
        await log.log_security_event("u1", SecurityEventType.LOGOUT)

        assert await log.get_security_events("u2") == []

    async def test_log_expires(self, cache, log):
        await log.log_security_event("u1", SecurityEventType.LOGIN)

        assert cache.ttl("test:security:events:u1") == pytest.approx(90 * 24 * 60 * 60, abs=5)

    async def test_unknown_event_type_rejected(self, log):
        with pytest.raises(ValueError):
            await log.log_security_event("u1", "password_changed")

    async def test_corrupt_entries_skipped(self, cache, log):
        await log.log_security_event("u1", SecurityEventType.LOGIN)
        await cache.list_push("test:security:events:u1", "{broken")

        events = await log.get_security_events("u1")

        assert len(events) == 1

    async def test_fixed_clock(self, cache):
        moment = datetime(2024, 5, 1, tzinfo=timezone.utc)
        log = SecurityEventLog(cache, "test", clock=lambda: moment)

        event = await log.log_security_event("u1", SecurityEventType.SESSION_REVOKED)

        assert event.timestamp == moment
        assert (await log.get_security_events("u1"))[0].timestamp == moment


class TestUserActivityLog:
    @pytest.fixture
    def activity(self, cache):
        return UserActivityLog(cache, "test", max_entries=3)

    async def test_default_limits(self, cache):
        log = UserActivityLog(cache, "test")

        await log.track_user_activity("u1", "login")

        assert log.max_entries == 100
        assert cache.ttl("test:user:activity:u1") == pytest.approx(30 * 24 * 60 * 60, abs=5)

    async def test_newest_first_with_metadata(self, activity):
        await activity.track_user_activity("u1", "viewed_course", {"course": "c1"})
        await activity.track_user_activity("u1", "submitted_quiz")

        entries = await activity.get_user_activity("u1")

        assert [e.activity for e in entries] == ["submitted_quiz", "viewed_course"]
        assert entries[1].metadata == {"course": "c1"}
        assert entries[0].user_id == "u1"

    async def test_capped_and_limited(self, activity):
        for i in range(5):
            await activity.track_user_activity("u1", f"step-{i}")

        assert [e.activity for e in await activity.get_user_activity("u1", limit=10)] == [
            "step-4",
            "step-3",
            "step-2",
        ]
        assert len(await activity.get_user_activity("u1", limit=1)) == 1
        assert await activity.get_user_activity("u1", limit=0) == []

    async def test_separate_from_security_events(self, cache, activity, log):
        await activity.track_user_activity("u1", "login")

        assert await log.get_security_events("u1") == []

    async def test_corrupt_entries_skipped(self, cache, activity):
        await activity.track_user_activity("u1", "login")
        await cache.list_push("test:user:activity:u1", "[]")

        assert [e.activity for e in await activity.get_user_activity("u1")] == ["login"]
