"""Authentication, sessions, permissions, and per-user rate limiting.

AccessControl exclusively owns User and Session records. Session state:

    created -> active -> invalid (terminal)

A session becomes invalid after SESSION_TIMEOUT of inactivity or on explicit
invalidation, and is never valid again. Rate limiting is a true sliding
window over monotonic timestamps, keyed by user id.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Iterable

from electron_pilot.logging import Loggers
from electron_pilot.security.models import Permission, RateLimit, Session, User

if TYPE_CHECKING:
    from electron_pilot.config import PilotSettings

logger = Loggers.access()

SESSION_TIMEOUT_SECONDS = 24 * 60 * 60
SESSION_CLEANUP_INTERVAL_SECONDS = 60 * 60
PASSWORD_HASH_ITERATIONS = 100_000
API_KEY_PREFIX = "ep_"
REDACTED = "[REDACTED]"

DEFAULT_PERMISSIONS = frozenset({Permission.EXECUTE_CODE, Permission.TAKE_SCREENSHOT})
ADMIN_RATE_LIMIT = RateLimit(max_requests=1000, window_ms=60000)


@dataclass
class SlidingWindowRateLimiter:
    """Sliding-window request counter.

    A request is allowed when fewer than max_requests requests were allowed
    for the same key within the last window_ms. Denied requests are not
    counted.
    """

    clock: Callable[[], float] = time.monotonic
    _windows: dict[str, deque[float]] = field(default_factory=dict, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def _prune(self, key: str, window_ms: int, now: float) -> deque[float]:
        window = self._windows.setdefault(key, deque())
        cutoff = now - window_ms / 1000
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    async def check(self, key: str, max_requests: int, window_ms: int) -> bool:
        """Record a request for key if allowed. Returns False when limited."""
        async with self._lock:
            now = self.clock()
            window = self._prune(key, window_ms, now)
            if len(window) >= max_requests:
                return False
            window.append(now)
            return True

    def remaining(self, key: str, max_requests: int, window_ms: int) -> int:
        window = self._prune(key, window_ms, self.clock())
        return max(0, max_requests - len(window))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)


class AccessControl:
    """Users, sessions, permissions, and rate limits for callers."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        session_timeout_seconds: float = SESSION_TIMEOUT_SECONDS,
        cleanup_interval_seconds: float = SESSION_CLEANUP_INTERVAL_SECONDS,
        default_rate_limit: RateLimit | None = None,
        password_iterations: int = PASSWORD_HASH_ITERATIONS,
    ):
        """Initialize access control.

        Args:
            clock: Monotonic clock (seconds) for sessions and rate limits.
            session_timeout_seconds: Inactivity window before a session dies.
            cleanup_interval_seconds: Period of the background cleanup task.
            default_rate_limit: Rate limit for users created without one.
            password_iterations: PBKDF2 iterations for password hashes.
        """
        self._clock = clock
        self.session_timeout_seconds = session_timeout_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.default_rate_limit = default_rate_limit or RateLimit()
        self.password_iterations = password_iterations

        self._users: dict[str, User] = {}
        self._sessions: dict[str, Session] = {}
        self._rate_limiter = SlidingWindowRateLimiter(clock=clock)
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task | None = None
        # Equalizes the work done for unknown usernames
        self._dummy_salt = secrets.token_hex(16)

    @classmethod
    def from_settings(cls, settings: "PilotSettings", **kwargs) -> "AccessControl":
        """Build access control with the configured default rate limit.

        Args:
            settings: Loaded settings (rate_limit_max_requests, rate_limit_window_ms).
            **kwargs: Passed through to the constructor (clock, timeouts).
        """
        rate_limit = RateLimit(
            max_requests=settings.rate_limit_max_requests,
            window_ms=settings.rate_limit_window_ms,
        )
        return cls(default_rate_limit=rate_limit, **kwargs)

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic session cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Cancel the cleanup task."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            await self.cleanup_expired_sessions()

    async def cleanup_expired_sessions(self) -> int:
        """Drop invalidated and timed-out sessions. Returns the count removed."""
        async with self._lock:
            now = self._clock()
            expired = [
                sid
                for sid, session in self._sessions.items()
                if not session.is_valid or self._is_expired(session, now)
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("sessions_cleaned", count=len(expired))
        return len(expired)

    # User management

    async def create_user(
        self,
        username: str,
        password: str,
        permissions: Iterable[Permission] = DEFAULT_PERMISSIONS,
        rate_limit: RateLimit | None = None,
    ) -> User:
        """Provision a user with a fresh API key.

        Raises:
            ValueError: If the username is empty or already taken.
        """
        if not username:
            raise ValueError("username must not be empty")

        salt = secrets.token_hex(16)
        hashed = await asyncio.to_thread(self._hash_password, password, salt)

        async with self._lock:
            if any(u.username == username for u in self._users.values()):
                raise ValueError(f"User already exists: {username}")
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                hashed_password=hashed,
                password_salt=salt,
                permissions=frozenset(permissions),
                rate_limit=rate_limit or replace(self.default_rate_limit),
                created_at=time.time(),
                api_key=self._generate_api_key(),
            )
            self._users[user.id] = user

        logger.info(
            "user_created",
            user_id=user.id,
            username=username,
            permissions=sorted(p.value for p in user.permissions),
        )
        return user

    async def ensure_default_admin(self, password: str | None = None) -> tuple[User | None, str | None]:
        """Create the 'admin' user when no users exist.

        Args:
            password: Configured admin password. A random one is generated
                when None.

        Returns:
            (user, generated_password). Both None if users already exist;
            generated_password is None when a password was supplied.
        """
        if self._users:
            return None, None

        generated = None
        if not password:
            generated = secrets.token_urlsafe(18)
            password = generated

        user = await self.create_user(
            "admin", password, {Permission.ADMIN}, rate_limit=replace(ADMIN_RATE_LIMIT)
        )
        if generated:
            logger.warning(
                "default_admin_created",
                username="admin",
                generated_password=generated,
                hint="Set PILOT_ADMIN_PASSWORD to choose the admin password",
            )
        else:
            logger.info("default_admin_created", username="admin")
        return user, generated

    def get_user_by_id(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def get_user_by_session(self, session_id: str) -> User | None:
        session = self.get_valid_session(session_id)
        if session is None:
            return None
        return self._users.get(session.user_id)

    def list_users(self) -> list[User]:
        """All users with password hash, salt, and API key redacted."""
        return [
            replace(
                user,
                hashed_password=REDACTED,
                password_salt=REDACTED,
                api_key=REDACTED if user.api_key else None,
            )
            for user in self._users.values()
        ]

    def update_user_permissions(self, user_id: str, permissions: Iterable[Permission]) -> bool:
        """Replace a user's permissions and invalidate all their sessions."""
        user = self._users.get(user_id)
        if user is None:
            return False
        user.permissions = frozenset(permissions)
        self.invalidate_all_sessions(user_id)
        logger.info(
            "user_permissions_updated",
            user_id=user_id,
            permissions=sorted(p.value for p in user.permissions),
        )
        return True

    def deactivate_user(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        if user is None:
            return False
        user.is_active = False
        self.invalidate_all_sessions(user_id)
        logger.info("user_deactivated", user_id=user_id)
        return True

    def activate_user(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        if user is None:
            return False
        user.is_active = True
        logger.info("user_activated", user_id=user_id)
        return True

    def regenerate_api_key(self, user_id: str) -> str | None:
        """Issue a new API key. The previous key stops authenticating."""
        user = self._users.get(user_id)
        if user is None:
            return None
        user.api_key = self._generate_api_key()
        logger.info("api_key_regenerated", user_id=user_id)
        return user.api_key

    # Authentication

    async def authenticate_user(self, username: str, password: str) -> str | None:
        """Check a password and mint a session.

        Returns:
            New session id, or None on any failure. The caller cannot tell an
            unknown user from a wrong password.
        """
        user = next((u for u in self._users.values() if u.username == username), None)
        salt = user.password_salt if user is not None else self._dummy_salt
        candidate = await asyncio.to_thread(self._hash_password, password, salt)

        if user is None:
            logger.warning("authentication_failed", username=username, reason="unknown_user")
            return None
        if not hmac.compare_digest(candidate, user.hashed_password):
            logger.warning("authentication_failed", username=username, reason="wrong_password")
            return None
        if not user.is_active:
            logger.warning("authentication_failed", username=username, reason="inactive")
            return None

        user.last_login = time.time()
        return await self._create_session(user, method="password")

    async def authenticate_api_key(self, api_key: str) -> str | None:
        """Mint a session from an API key. Returns None on any failure."""
        user = next(
            (
                u
                for u in self._users.values()
                if u.api_key is not None
                and hmac.compare_digest(u.api_key.encode(), (api_key or "").encode())
            ),
            None,
        )
        if user is None or not user.is_active:
            logger.warning("api_key_authentication_failed", reason="unknown_or_inactive")
            return None
        return await self._create_session(user, method="api_key")

    async def _create_session(self, user: User, method: str) -> str:
        async with self._lock:
            now = self._clock()
            session = Session(
                user_id=user.id,
                session_id=str(uuid.uuid4()),
                created_at=now,
                last_activity=now,
                permissions=user.permissions,
            )
            self._sessions[session.session_id] = session
        logger.info("session_created", user_id=user.id, session_id=session.session_id, method=method)
        return session.session_id

    # Sessions and permissions

    def get_valid_session(self, session_id: str) -> Session | None:
        """Return the session if still valid, bumping its last activity."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_valid:
            return None

        now = self._clock()
        if self._is_expired(session, now):
            self.invalidate_session(session_id)
            return None

        session.last_activity = now
        return session

    def invalidate_session(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None and session.is_valid:
            session.is_valid = False
            logger.info("session_invalidated", session_id=session_id)

    def invalidate_all_sessions(self, user_id: str) -> int:
        count = 0
        for session in self._sessions.values():
            if session.user_id == user_id and session.is_valid:
                session.is_valid = False
                count += 1
        if count:
            logger.info("sessions_invalidated", user_id=user_id, count=count)
        return count

    def has_permission(self, session_id: str, permission: Permission) -> bool:
        """Check the session's permission snapshot. ADMIN implies all."""
        session = self.get_valid_session(session_id)
        if session is None:
            return False
        return Permission.ADMIN in session.permissions or permission in session.permissions

    # Rate limiting

    async def check_rate_limit(self, session_id: str) -> bool:
        """Count one request against the session's user. False when denied."""
        session = self.get_valid_session(session_id)
        if session is None:
            return False
        user = self._users.get(session.user_id)
        if user is None:
            return False

        allowed = await self._rate_limiter.check(
            user.id, user.rate_limit.max_requests, user.rate_limit.window_ms
        )
        if not allowed:
            logger.warning("rate_limit_exceeded", user_id=user.id)
        return allowed

    async def authorize(self, session_id: str | None, permission: Permission) -> str | None:
        """Gate one caller request: valid session, permission, rate limit.

        Returns:
            None when allowed, otherwise a caller-safe denial reason.
        """
        if not session_id or self.get_valid_session(session_id) is None:
            return "Authentication required"
        if not self.has_permission(session_id, permission):
            logger.warning("permission_denied", session_id=session_id, permission=permission.value)
            return f"Permission denied: {permission.value}"
        if not await self.check_rate_limit(session_id):
            return "Rate limit exceeded"
        return None

    def get_remaining_requests(self, session_id: str) -> int:
        session = self.get_valid_session(session_id)
        if session is None:
            return 0
        user = self._users.get(session.user_id)
        if user is None:
            return 0
        return self._rate_limiter.remaining(
            user.id, user.rate_limit.max_requests, user.rate_limit.window_ms
        )

    # Helpers

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_activity > self.session_timeout_seconds

    def _hash_password(self, password: str, salt: str) -> str:
        return hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), bytes.fromhex(salt), self.password_iterations
        ).hex()

    @staticmethod
    def _generate_api_key() -> str:
        return API_KEY_PREFIX + secrets.token_hex(32)


async def start_access_control(settings: "PilotSettings", **kwargs) -> AccessControl:
    """Build access control from settings, provision the default admin, and start cleanup.

    The admin user is created only when no users exist, with
    PILOT_ADMIN_PASSWORD or a generated password that is logged once.
    """
    access_control = AccessControl.from_settings(settings, **kwargs)
    password = settings.admin_password.get_secret_value() if settings.admin_password else None
    await access_control.ensure_default_admin(password)
    await access_control.start()
    return access_control
