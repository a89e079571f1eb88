"""
Session lifecycle state machine.

States: anonymous -> authenticated -> expired. A new login is the only way out
of expired, and logout returns to anonymous from anywhere.

Invariants:
- Absolute expiry (now > expires_at) wins regardless of activity
- Idle expiry fires when now - last_activity exceeds the idle timeout
- Activity updates last_activity and hides the warning; it never moves expires_at
- Only refresh() moves expires_at
- Expiry side effects (storage cleared, on_expired callback) happen exactly once
- Logout and expiry cancel the polling task of the current session
"""
import asyncio
import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from rbac_core.config import Settings, get_settings
from rbac_core.models.domain import AuthSession, User
from rbac_core.models.enums import ExpiryReason, SessionState
from rbac_core.models.result import InvalidTransitionError
from rbac_core.repositories.base import KeyValueStore
from rbac_core.repositories.memory import InMemoryKeyValueStore

SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."

TOKEN_KEY = "token"
USER_KEY = "user"
EXPIRES_AT_KEY = "expires_at"
LOGIN_TIME_KEY = "login_time"
STORAGE_KEYS = (TOKEN_KEY, USER_KEY, EXPIRES_AT_KEY, LOGIN_TIME_KEY)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot of what a caller needs to render session state."""
    state: SessionState
    show_warning: bool = False
    minutes_until_expiry: Optional[int] = None
    message: Optional[str] = None
    expiry_reason: Optional[ExpiryReason] = None


class SessionManager:
    """
    Tracks one session at a time.

    The clock is injectable so expiry can be tested without waiting. Expiry is
    evaluated eagerly whenever state or the session is read, and periodically
    by an asyncio polling task while authenticated.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[KeyValueStore] = None,
        clock: Clock = utcnow,
        on_expired: Optional[Callable[[ExpiryReason], None]] = None,
        on_warning: Optional[Callable[[int], None]] = None,
    ):
        settings = settings or get_settings()
        self.session_duration = settings.session_duration
        self.idle_timeout = settings.idle_timeout
        self.warning_threshold = settings.warning_threshold
        self.check_interval = settings.check_interval

        self.storage = storage if storage is not None else InMemoryKeyValueStore()
        self.clock = clock
        self.on_expired = on_expired
        self.on_warning = on_warning

        self._state = SessionState.ANONYMOUS
        self._session: Optional[AuthSession] = None
        self._show_warning = False
        self._minutes_until_expiry: Optional[int] = None
        self._message: Optional[str] = None
        self._expiry_reason: Optional[ExpiryReason] = None
        self._poll_task: Optional[asyncio.Task] = None
        # Bumped on every begin/logout so a stale poller can tell it is stale
        self._generation = 0

    # Reads (eager expiry check)

    @property
    def state(self) -> SessionState:
        self._check_expiry()
        return self._state

    @property
    def session(self) -> Optional[AuthSession]:
        self._check_expiry()
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def show_warning(self) -> bool:
        self._check_expiry()
        return self._show_warning

    @property
    def minutes_until_expiry(self) -> Optional[int]:
        self._check_expiry()
        return self._minutes_until_expiry if self._show_warning else None

    @property
    def message(self) -> Optional[str]:
        return self._message

    @property
    def expiry_reason(self) -> Optional[ExpiryReason]:
        return self._expiry_reason

    def status(self) -> SessionStatus:
        state = self.state
        return SessionStatus(
            state=state,
            show_warning=self._show_warning,
            minutes_until_expiry=self._minutes_until_expiry if self._show_warning else None,
            message=self._message,
            expiry_reason=self._expiry_reason,
        )

    # Transitions

    def begin(
        self,
        token: str,
        user: User,
        login_time: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> AuthSession:
        """
        Enter authenticated after a successful credential check.

        Only reachable from anonymous or expired; raises InvalidTransitionError
        if a session is already active.
        """
        if self.state == SessionState.AUTHENTICATED:
            raise InvalidTransitionError("A session is already active; log out first", self._state.value)

        now = self.clock()
        login_time = login_time or now
        expires_at = expires_at or login_time + self.session_duration
        self._activate(AuthSession(
            token=token,
            user=user,
            login_time=login_time,
            expires_at=expires_at,
            last_activity=now,
        ))
        self._evaluate_warning()
        self._persist()
        logger.info(f"Session started for {user.username}, expires at {expires_at.isoformat()}")
        return self._session

    def track_activity(self) -> bool:
        """Record a user interaction. Returns False when there is no live session."""
        if not self.is_authenticated:
            return False
        self._session = AuthSession(
            token=self._session.token,
            user=self._session.user,
            login_time=self._session.login_time,
            expires_at=self._session.expires_at,
            last_activity=self.clock(),
        )
        self._show_warning = False
        return True

    def check(self) -> SessionState:
        """
        Poll: evaluate expiry, then the warning window.

        Safe to call any number of times; expiry side effects fire once.
        """
        if self._check_expiry():
            self._evaluate_warning()
        return self._state

    def refresh(self, new_token: Optional[str] = None) -> AuthSession:
        """Push expires_at out by a full session duration from now."""
        if not self.is_authenticated:
            raise InvalidTransitionError("No active session to refresh", self._state.value)
        now = self.clock()
        self._session = AuthSession(
            token=new_token or self._session.token,
            user=self._session.user,
            login_time=self._session.login_time,
            expires_at=now + self.session_duration,
            last_activity=now,
        )
        self._show_warning = False
        self._minutes_until_expiry = None
        self._persist()
        logger.info(f"Session refreshed for {self._session.user.username}")
        return self._session

    def replace_user(self, user: User) -> None:
        """Swap in a fresher copy of the authenticated user (e.g. after a role change)."""
        if not self.is_authenticated:
            raise InvalidTransitionError("No active session", self._state.value)
        self._session = AuthSession(
            token=self._session.token,
            user=user,
            login_time=self._session.login_time,
            expires_at=self._session.expires_at,
            last_activity=self._session.last_activity,
        )
        self._persist()

    def logout(self) -> None:
        """Cancel timers, clear persisted state and return to anonymous."""
        self.stop_polling()
        self._generation += 1
        username = self._session.user.username if self._session else None
        self._clear()
        self._state = SessionState.ANONYMOUS
        self._message = None
        self._expiry_reason = None
        if username:
            logger.info(f"Session ended for {username}")

    def restore(self) -> bool:
        """
        Rebuild a session from persisted storage.

        Malformed data and already-expired sessions leave the manager anonymous
        and clear the stored keys. Returns True if a session was restored.
        """
        if self.state == SessionState.AUTHENTICATED:
            return True

        raw = {key: self.storage.get(key) for key in STORAGE_KEYS}
        if all(value is None for value in raw.values()):
            return False

        try:
            if any(value is None for value in raw.values()):
                raise ValueError("incomplete session data")
            user = User.from_public_dict(json.loads(raw[USER_KEY]))
            expires_at = _parse_timestamp(raw[EXPIRES_AT_KEY])
            login_time = _parse_timestamp(raw[LOGIN_TIME_KEY])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding malformed stored session: {e}")
            self._clear_storage()
            return False

        if self.clock() > expires_at:
            logger.info(f"Stored session for {user.username} has expired; not restoring")
            self._clear_storage()
            return False

        self._activate(AuthSession(
            token=raw[TOKEN_KEY],
            user=user,
            login_time=login_time,
            expires_at=expires_at,
            last_activity=self.clock(),
        ))
        self._evaluate_warning()
        logger.info(f"Session restored for {user.username}")
        return True

    # Polling

    def start_polling(self) -> asyncio.Task:
        """Start the periodic check on the running event loop."""
        self.stop_polling()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(self._generation))
        return self._poll_task

    def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _poll(self, generation: int) -> None:
        interval = self.check_interval.total_seconds()
        while generation == self._generation and self._state == SessionState.AUTHENTICATED:
            self.check()
            if self._state != SessionState.AUTHENTICATED:
                break
            await asyncio.sleep(interval)

    # Internals

    def _activate(self, session: AuthSession) -> None:
        self._generation += 1
        self._session = session
        self._state = SessionState.AUTHENTICATED
        self._show_warning = False
        self._minutes_until_expiry = None
        self._message = None
        self._expiry_reason = None

    def _evaluate_warning(self) -> None:
        remaining = self._session.expires_at - self.clock()
        if timedelta(0) < remaining <= self.warning_threshold:
            minutes = math.ceil(remaining.total_seconds() / 60)
            self._show_warning = True
            self._minutes_until_expiry = minutes
            if self.on_warning is not None:
                self.on_warning(minutes)
        else:
            self._show_warning = False
            self._minutes_until_expiry = None

    def _check_expiry(self) -> bool:
        """Expire the session if due. Returns True if still authenticated."""
        if self._state != SessionState.AUTHENTICATED:
            return False
        now = self.clock()
        if now > self._session.expires_at:
            self._expire(ExpiryReason.ABSOLUTE)
            return False
        if now - self._session.last_activity > self.idle_timeout:
            self._expire(ExpiryReason.IDLE)
            return False
        return True

    def _expire(self, reason: ExpiryReason) -> None:
        username = self._session.user.username
        self._clear()
        self._state = SessionState.EXPIRED
        self._message = SESSION_EXPIRED_MESSAGE
        self._expiry_reason = reason
        self.stop_polling()
        logger.info(f"Session for {username} expired ({reason.value})")
        if self.on_expired is not None:
            self.on_expired(reason)

    def _clear(self) -> None:
        self._session = None
        self._show_warning = False
        self._minutes_until_expiry = None
        self._clear_storage()

    def _persist(self) -> None:
        self.storage.set(TOKEN_KEY, self._session.token)
        self.storage.set(USER_KEY, json.dumps(self._session.user.public_dict()))
        self.storage.set(EXPIRES_AT_KEY, self._session.expires_at.isoformat())
        self.storage.set(LOGIN_TIME_KEY, self._session.login_time.isoformat())

    def _clear_storage(self) -> None:
        for key in STORAGE_KEYS:
            self.storage.remove(key)
