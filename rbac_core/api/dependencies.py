"""
FastAPI dependencies: per-request services and the bearer-token session lookup.

Stores and services are rebuilt per request around the request's database
session. Session state outlives requests and lives in the SessionRegistry,
keyed by the opaque bearer token.
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from sqlalchemy.orm import Session

from rbac_core.config import Settings, get_settings
from rbac_core.database import get_db
from rbac_core.models.enums import SessionState
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.sql import SqlAuditStore, SqlPermissionStore, SqlRoleStore, SqlUserStore
from rbac_core.services.audit_recorder import AuditRecorder, MonotonicClock
from rbac_core.services.auth_service import AuthService
from rbac_core.services.role_guard import RoleGuard
from rbac_core.services.role_service import RoleService
from rbac_core.services.session_manager import SESSION_EXPIRED_MESSAGE, SessionManager
from rbac_core.services.user_service import UserService

# One audit clock for the process keeps timestamps strictly increasing across requests
audit_clock = MonotonicClock()

bearer_scheme = HTTPBearer(auto_error=False)

ERROR_STATUS = {
    ErrorCode.INVALID_CREDENTIALS.value: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.USER_INACTIVE.value: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.SESSION_EXPIRED.value: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.ROLE_INACTIVE.value: status.HTTP_403_FORBIDDEN,
    ErrorCode.DELETE_NOT_ALLOWED.value: status.HTTP_403_FORBIDDEN,
    ErrorCode.MODIFICATION_NOT_ALLOWED.value: status.HTTP_403_FORBIDDEN,
    ErrorCode.USER_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.ROLE_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.DUPLICATE_ROLE_KEY.value: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_USERNAME.value: status.HTTP_409_CONFLICT,
    ErrorCode.DUPLICATE_EMAIL.value: status.HTTP_409_CONFLICT,
    ErrorCode.NO_PERMISSIONS.value: 422,
    ErrorCode.INVALID_PERMISSIONS.value: 422,
    ErrorCode.AUDIT_LOG_ERROR.value: 422,
    ErrorCode.INVALID_PASSWORD.value: 422,
    ErrorCode.STORAGE_ERROR.value: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_error(result: Result) -> None:
    """Raise the HTTPException matching a failed result; no-op on success."""
    if result.success:
        return
    raise HTTPException(
        status_code=ERROR_STATUS.get(result.error.code, status.HTTP_400_BAD_REQUEST),
        detail={"code": result.error.code, "message": result.error.message},
    )


class SessionRegistry:
    """Live sessions keyed by bearer token."""

    def __init__(self):
        self._sessions: Dict[str, SessionManager] = {}
        self._task: Optional[asyncio.Task] = None

    def add(self, manager: SessionManager) -> None:
        self._sessions[manager.session.token] = manager

    def get(self, token: str) -> Optional[SessionManager]:
        return self._sessions.get(token)

    def discard(self, token: str) -> None:
        self._sessions.pop(token, None)

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def sweep(self) -> int:
        """Run the periodic check on every session and drop the ones that ended."""
        ended = [
            token for token, manager in list(self._sessions.items())
            if manager.check() != SessionState.AUTHENTICATED
        ]
        for token in ended:
            self.discard(token)
        if ended:
            logger.info(f"Dropped {len(ended)} ended session(s)")
        return len(ended)

    async def start(self, interval_seconds: float) -> None:
        """Start the periodic sweep."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(interval_seconds))
        logger.info("Session sweeper started")

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session sweeper stopped")

    async def _run_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()


session_registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return session_registry


@dataclass
class Services:
    users: SqlUserStore
    roles: SqlRoleStore
    permissions: SqlPermissionStore
    audit: AuditRecorder
    guard: RoleGuard
    role_service: RoleService
    user_service: UserService
    settings: Settings


def get_services(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> Services:
    users = SqlUserStore(db)
    roles = SqlRoleStore(db)
    permissions = SqlPermissionStore(db)
    audit = AuditRecorder(SqlAuditStore(db), clock=audit_clock)
    guard = RoleGuard(users, roles, permissions)
    return Services(
        users=users,
        roles=roles,
        permissions=permissions,
        audit=audit,
        guard=guard,
        role_service=RoleService(roles, users, guard, audit),
        user_service=UserService(users, roles, guard, audit, settings=settings),
        settings=settings,
    )


def _resolve_auth(
    credentials: Optional[HTTPAuthorizationCredentials],
    services: Services,
    registry: SessionRegistry,
) -> AuthService:
    """Bearer token -> live session with permissions rebuilt from current data."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": ErrorCode.INVALID_CREDENTIALS.value, "message": "Not authenticated"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    manager = registry.get(token)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": ErrorCode.SESSION_EXPIRED.value, "message": SESSION_EXPIRED_MESSAGE},
            headers={"WWW-Authenticate": "Bearer"},
        )

    auth = AuthService(services.users, services.roles, services.audit, settings=services.settings, session=manager)
    reloaded = auth.reload_permissions()
    if not reloaded.success:
        if not manager.is_authenticated:
            registry.discard(token)
        raise_for_error(reloaded)
    return auth


def get_current_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
    registry: SessionRegistry = Depends(get_registry),
) -> AuthService:
    """
    Resolve the bearer token to a live session.

    Expiry is evaluated eagerly, permissions are rebuilt from current data and
    the request counts as activity.
    """
    auth = _resolve_auth(credentials, services, registry)
    auth.record_activity()
    return auth


def get_session_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
    registry: SessionRegistry = Depends(get_registry),
) -> AuthService:
    """Like get_current_auth, but a status poll is not user activity and leaves the idle timer alone."""
    return _resolve_auth(credentials, services, registry)


def require(action: str, subject: str):
    """Dependency factory: the session's ability must allow action on subject."""
    def checker(auth: AuthService = Depends(get_current_auth)) -> AuthService:
        if auth.ability.cannot(action, subject):
            logger.info(f"'{auth.current_user.username}' denied {action} on {subject}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "FORBIDDEN",
                    "message": f"You do not have permission to {action} {subject}",
                },
            )
        return auth
    return checker
