"""
Authentication for a single session.

One AuthService owns one SessionManager and the AbilityEngine built for the
logged-in user's role. The engine is replaced wholesale whenever the role is
reloaded and swapped for an empty one when the session ends.
"""
import secrets
from typing import Optional

from loguru import logger

from rbac_core.config import Settings, get_settings
from rbac_core.models.domain import Actor, AuthSession, Role, User
from rbac_core.models.enums import ExpiryReason, UserStatus
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.base import KeyValueStore, RoleStore, UserStore
from rbac_core.services.ability import AbilityEngine
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.passwords import verify_password
from rbac_core.services.permission_index import PermissionIndex
from rbac_core.services.session_manager import (
    SESSION_EXPIRED_MESSAGE,
    Clock,
    SessionManager,
    SessionStatus,
    utcnow,
)

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password"


class AuthService:
    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        audit: AuditRecorder,
        settings: Optional[Settings] = None,
        storage: Optional[KeyValueStore] = None,
        clock: Clock = utcnow,
        session: Optional[SessionManager] = None,
    ):
        """
        Pass an existing SessionManager to resume a session created by another
        AuthService instance (e.g. one per HTTP request); call
        reload_permissions() afterwards to build its ability engine.
        """
        self.users = users
        self.roles = roles
        self.audit = audit
        self.clock = clock
        if session is None:
            session = SessionManager(settings=settings or get_settings(), storage=storage, clock=clock)
        session.on_expired = self._on_expired
        self.session = session
        self._ability = AbilityEngine.empty()
        self._role: Optional[Role] = None

    # Reads

    @property
    def ability(self) -> AbilityEngine:
        """The current engine; empty once the session is gone."""
        if not self.session.is_authenticated:
            return AbilityEngine.empty()
        return self._ability

    @property
    def current_user(self) -> Optional[User]:
        current = self.session.session
        return current.user if current else None

    @property
    def role(self) -> Optional[Role]:
        return self._role if self.session.is_authenticated else None

    @property
    def actor(self) -> Optional[Actor]:
        user = self.current_user
        return Actor(user.id, user.username) if user else None

    def status(self) -> SessionStatus:
        return self.session.status()

    # Transitions

    def login(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthSession]:
        """
        Check credentials, start a session and build the ability engine.

        Checks run in order: credentials, account status, role existence, role
        status. Logging in over a live session ends that session first.
        """
        if self.session.is_authenticated:
            self.logout()

        found = self.users.get_by_username(username)
        if not found.success:
            return Result.from_error(found.error)
        user = found.data

        if user is None or not verify_password(password, user.password_hash):
            logger.warning(f"Login failed for '{username}': {ErrorCode.INVALID_CREDENTIALS.value}")
            return Result.fail(ErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        if user.status != UserStatus.ACTIVE:
            logger.warning(f"Login refused for '{username}': account is {user.status.value}")
            return Result.fail(
                ErrorCode.USER_INACTIVE,
                f"Account is {user.status.value}. Please contact your administrator.",
            )

        role_result = self._load_role(user)
        if not role_result.success:
            logger.warning(f"Login refused for '{username}': {role_result.error_code}")
            return Result.from_error(role_result.error)
        role = role_result.data

        now = self.clock()
        stamped = user.with_changes(last_login=now)
        updated = self.users.update(stamped)
        if updated.success:
            user = stamped
        else:
            logger.warning(f"Could not stamp last login for '{username}': {updated.error.message}")

        auth_session = self.session.begin(secrets.token_urlsafe(32), user, login_time=now)
        self._set_role(role)
        self.audit.login(user, ip_address=ip_address, user_agent=user_agent)
        logger.info(f"Login succeeded for '{username}' with role '{role.key}'")
        return Result.ok(auth_session)

    def logout(self) -> Result[None]:
        user = self.current_user
        self.session.logout()
        self._clear_permissions()
        if user is not None:
            self.audit.logout(user)
        return Result.ok()

    def refresh(self) -> Result[AuthSession]:
        if not self.session.is_authenticated:
            return Result.fail(ErrorCode.SESSION_EXPIRED, SESSION_EXPIRED_MESSAGE)
        return Result.ok(self.session.refresh())

    def record_activity(self) -> bool:
        return self.session.track_activity()

    def restore(self) -> bool:
        """Restore a persisted session and rebuild permissions from current data."""
        if not self.session.restore():
            return False
        reloaded = self.reload_permissions()
        return reloaded.success

    def reload_permissions(self) -> Result[AbilityEngine]:
        """
        Re-read the user and role and build a fresh engine.

        If the user or role is gone or no longer active the session ends.
        """
        if not self.session.is_authenticated:
            return Result.fail(ErrorCode.SESSION_EXPIRED, SESSION_EXPIRED_MESSAGE)

        found = self.users.get(self.current_user.id)
        if not found.success:
            return Result.from_error(found.error)
        user = found.data

        if user is None:
            self._end_session("user no longer exists")
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        if not user.is_active:
            self._end_session(f"account is {user.status.value}")
            return Result.fail(
                ErrorCode.USER_INACTIVE,
                f"Account is {user.status.value}. Please contact your administrator.",
            )

        role_result = self._load_role(user)
        if not role_result.success:
            if role_result.error_code != ErrorCode.STORAGE_ERROR.value:
                self._end_session(role_result.error.message)
            return Result.from_error(role_result.error)

        self.session.replace_user(user)
        self._set_role(role_result.data)
        return Result.ok(self._ability)

    # Internals

    def _load_role(self, user: User) -> Result[Role]:
        found = self.roles.get(user.role_id)
        if not found.success:
            return Result.from_error(found.error)
        role = found.data
        if role is None:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "User role not found. Please contact your administrator.")
        if not role.is_active:
            return Result.fail(ErrorCode.ROLE_INACTIVE, "Your role is inactive. Please contact your administrator.")
        return Result.ok(role)

    def _set_role(self, role: Role) -> None:
        self._role = role
        self._ability = AbilityEngine(PermissionIndex(role.permission_keys))

    def _clear_permissions(self) -> None:
        self._role = None
        self._ability = AbilityEngine.empty()

    def _end_session(self, why: str) -> None:
        logger.warning(f"Ending session for '{self.current_user.username}': {why}")
        self.session.logout()
        self._clear_permissions()

    def _on_expired(self, reason: ExpiryReason) -> None:
        self._clear_permissions()
