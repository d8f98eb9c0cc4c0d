"""Tests for users, sessions, permissions, and rate limiting.

Time is driven by a FakeClock, so session expiry and rate windows are
exercised without sleeping.
"""

import asyncio
import os
from unittest.mock import patch

import pytest

from conftest import FakeClock
from electron_pilot.config import PilotSettings
from electron_pilot.security.access_control import (
    API_KEY_PREFIX,
    REDACTED,
    AccessControl,
    SlidingWindowRateLimiter,
    start_access_control,
)
from electron_pilot.security.models import Permission, RateLimit


def make_access_control(clock: FakeClock, **kwargs) -> AccessControl:
    # Low PBKDF2 cost keeps the suite fast
    return AccessControl(clock=clock, password_iterations=1000, **kwargs)


class TestUsers:
    @pytest.mark.asyncio
    async def test_create_user(self, fake_clock):
        ac = make_access_control(fake_clock)

        user = await ac.create_user("alice", "pw")

        assert user.username == "alice"
        assert user.is_active
        assert user.api_key.startswith(API_KEY_PREFIX)
        assert user.hashed_password != "pw"
        assert Permission.EXECUTE_CODE in user.permissions
        assert ac.get_user_by_id(user.id) is user

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.create_user("alice", "pw")

        with pytest.raises(ValueError, match="already exists"):
            await ac.create_user("alice", "other")

    @pytest.mark.asyncio
    async def test_empty_username_rejected(self, fake_clock):
        ac = make_access_control(fake_clock)

        with pytest.raises(ValueError):
            await ac.create_user("", "pw")

    @pytest.mark.asyncio
    async def test_list_users_redacts_secrets(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")

        listed = ac.list_users()

        assert listed[0].hashed_password == REDACTED
        assert listed[0].password_salt == REDACTED
        assert listed[0].api_key == REDACTED
        assert user.api_key != REDACTED

    @pytest.mark.asyncio
    async def test_ensure_default_admin_generates_password(self, fake_clock):
        ac = make_access_control(fake_clock)

        user, generated = await ac.ensure_default_admin()

        assert user.username == "admin"
        assert user.permissions == frozenset({Permission.ADMIN})
        assert generated
        assert await ac.authenticate_user("admin", generated)

    @pytest.mark.asyncio
    async def test_ensure_default_admin_with_configured_password(self, fake_clock):
        ac = make_access_control(fake_clock)

        user, generated = await ac.ensure_default_admin("configured")

        assert generated is None
        assert await ac.authenticate_user("admin", "configured")

    @pytest.mark.asyncio
    async def test_ensure_default_admin_skipped_when_users_exist(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.create_user("alice", "pw")

        assert await ac.ensure_default_admin() == (None, None)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_password_authentication(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")

        session_id = await ac.authenticate_user("alice", "pw")

        assert session_id
        assert ac.get_user_by_session(session_id).id == user.id
        assert user.last_login is not None

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_look_alike(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.create_user("alice", "pw")

        assert await ac.authenticate_user("alice", "wrong") is None
        assert await ac.authenticate_user("mallory", "pw") is None

    @pytest.mark.asyncio
    async def test_inactive_user_cannot_authenticate(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")
        ac.deactivate_user(user.id)

        assert await ac.authenticate_user("alice", "pw") is None
        assert await ac.authenticate_api_key(user.api_key) is None

        ac.activate_user(user.id)
        assert await ac.authenticate_user("alice", "pw")

    @pytest.mark.asyncio
    async def test_api_key_authentication(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")

        assert await ac.authenticate_api_key(user.api_key)
        assert await ac.authenticate_api_key("ep_bogus") is None
        assert await ac.authenticate_api_key("") is None

    @pytest.mark.asyncio
    async def test_regenerated_key_replaces_old(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")
        old_key = user.api_key

        new_key = ac.regenerate_api_key(user.id)

        assert new_key != old_key
        assert await ac.authenticate_api_key(old_key) is None
        assert await ac.authenticate_api_key(new_key)
        assert ac.regenerate_api_key("missing") is None


class TestSessions:
    @pytest.mark.asyncio
    async def test_inactivity_expires_session(self, fake_clock):
        ac = make_access_control(fake_clock, session_timeout_seconds=60)
        await ac.create_user("alice", "pw")
        session_id = await ac.authenticate_user("alice", "pw")

        fake_clock.advance(59)
        assert ac.get_valid_session(session_id) is not None

        fake_clock.advance(59)
        assert ac.get_valid_session(session_id) is not None

        fake_clock.advance(61)
        assert ac.get_valid_session(session_id) is None

        fake_clock.now -= 61
        assert ac.get_valid_session(session_id) is None

    @pytest.mark.asyncio
    async def test_invalidated_session_stays_invalid(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.create_user("alice", "pw")
        session_id = await ac.authenticate_user("alice", "pw")

        ac.invalidate_session(session_id)

        assert ac.get_valid_session(session_id) is None
        assert not ac.has_permission(session_id, Permission.EXECUTE_CODE)

    @pytest.mark.asyncio
    async def test_permission_change_invalidates_sessions(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw")
        first = await ac.authenticate_user("alice", "pw")
        second = await ac.authenticate_api_key(user.api_key)

        assert ac.update_user_permissions(user.id, {Permission.READ_LOGS})

        assert ac.get_valid_session(first) is None
        assert ac.get_valid_session(second) is None
        fresh = await ac.authenticate_user("alice", "pw")
        assert ac.has_permission(fresh, Permission.READ_LOGS)
        assert not ac.has_permission(fresh, Permission.EXECUTE_CODE)

    @pytest.mark.asyncio
    async def test_admin_implies_every_permission(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.ensure_default_admin("pw")
        session_id = await ac.authenticate_user("admin", "pw")

        for permission in Permission:
            assert ac.has_permission(session_id, permission)

    @pytest.mark.asyncio
    async def test_cleanup_removes_dead_sessions(self, fake_clock):
        ac = make_access_control(fake_clock, session_timeout_seconds=60)
        await ac.create_user("alice", "pw")
        expired = await ac.authenticate_user("alice", "pw")
        fake_clock.advance(120)
        invalidated = await ac.authenticate_user("alice", "pw")
        ac.invalidate_session(invalidated)
        live = await ac.authenticate_user("alice", "pw")

        assert await ac.cleanup_expired_sessions() == 2

        assert ac.get_valid_session(expired) is None
        assert ac.get_valid_session(live) is not None

    @pytest.mark.asyncio
    async def test_start_and_stop_cleanup_task(self, fake_clock):
        ac = make_access_control(fake_clock, cleanup_interval_seconds=0.01)

        await ac.start()
        await asyncio.sleep(0.03)
        await ac.stop()

        assert ac._cleanup_task is None


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_sliding_window(self, fake_clock):
        limiter = SlidingWindowRateLimiter(clock=fake_clock)

        assert await limiter.check("u", 2, 1000)
        fake_clock.advance(0.5)
        assert await limiter.check("u", 2, 1000)
        assert not await limiter.check("u", 2, 1000)

        # The first request leaves the window, the second is still inside it
        fake_clock.advance(0.6)
        assert await limiter.check("u", 2, 1000)
        assert not await limiter.check("u", 2, 1000)

    @pytest.mark.asyncio
    async def test_denied_requests_are_not_counted(self, fake_clock):
        limiter = SlidingWindowRateLimiter(clock=fake_clock)
        await limiter.check("u", 1, 1000)
        for _ in range(5):
            await limiter.check("u", 1, 1000)

        fake_clock.advance(1.1)

        assert await limiter.check("u", 1, 1000)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, fake_clock):
        limiter = SlidingWindowRateLimiter(clock=fake_clock)

        assert await limiter.check("a", 1, 1000)
        assert await limiter.check("b", 1, 1000)
        assert limiter.remaining("a", 1, 1000) == 0

        limiter.reset("a")
        assert limiter.remaining("a", 1, 1000) == 1

    @pytest.mark.asyncio
    async def test_limit_is_per_user(self, fake_clock):
        ac = make_access_control(fake_clock)
        user = await ac.create_user("alice", "pw", rate_limit=RateLimit(max_requests=2, window_ms=1000))
        first = await ac.authenticate_user("alice", "pw")
        second = await ac.authenticate_api_key(user.api_key)

        assert await ac.check_rate_limit(first)
        assert await ac.check_rate_limit(second)
        assert not await ac.check_rate_limit(first)
        assert ac.get_remaining_requests(second) == 0

    @pytest.mark.asyncio
    async def test_unknown_session_is_limited(self, fake_clock):
        ac = make_access_control(fake_clock)

        assert not await ac.check_rate_limit("missing")
        assert ac.get_remaining_requests("missing") == 0


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_reasons(self, fake_clock):
        ac = make_access_control(fake_clock)
        await ac.create_user(
            "alice",
            "pw",
            {Permission.EXECUTE_CODE},
            rate_limit=RateLimit(max_requests=1, window_ms=1000),
        )
        session_id = await ac.authenticate_user("alice", "pw")

        assert await ac.authorize(None, Permission.EXECUTE_CODE) == "Authentication required"
        assert await ac.authorize("missing", Permission.EXECUTE_CODE) == "Authentication required"
        assert (
            await ac.authorize(session_id, Permission.TAKE_SCREENSHOT)
            == "Permission denied: take_screenshot"
        )
        assert await ac.authorize(session_id, Permission.EXECUTE_CODE) is None
        assert await ac.authorize(session_id, Permission.EXECUTE_CODE) == "Rate limit exceeded"


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_configured_rate_limit_is_enforced(self, fake_clock, clean_env):
        with patch.dict(os.environ, {"PILOT_RATE_LIMIT_MAX_REQUESTS": "3", "PILOT_RATE_LIMIT_WINDOW_MS": "1000"}):
            settings = PilotSettings(_env_file=None)
        ac = AccessControl.from_settings(settings, clock=fake_clock, password_iterations=1000)
        await ac.create_user("alice", "pw")
        session_id = await ac.authenticate_user("alice", "pw")

        allowed = [await ac.check_rate_limit(session_id) for _ in range(4)]
        fake_clock.advance(1.01)

        assert ac.default_rate_limit == RateLimit(max_requests=3, window_ms=1000)
        assert allowed == [True, True, True, False]
        assert await ac.check_rate_limit(session_id)

    @pytest.mark.asyncio
    async def test_startup_provisions_configured_admin(self, fake_clock, clean_env):
        settings = PilotSettings(_env_file=None, admin_password="configured-admin")

        ac = await start_access_control(settings, clock=fake_clock, password_iterations=1000)
        try:
            session_id = await ac.authenticate_user("admin", "configured-admin")

            assert [u.username for u in ac.list_users()] == ["admin"]
            assert ac.has_permission(session_id, Permission.WINDOW_MANAGEMENT)
            assert ac._cleanup_task is not None
        finally:
            await ac.stop()

    @pytest.mark.asyncio
    async def test_startup_generates_admin_password(self, fake_clock, clean_env):
        ac = await start_access_control(
            PilotSettings(_env_file=None), clock=fake_clock, password_iterations=1000
        )
        try:
            assert [u.username for u in ac.list_users()] == ["admin"]
            assert await ac.authenticate_user("admin", "") is None
        finally:
            await ac.stop()
