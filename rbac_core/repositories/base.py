"""
Repository interfaces the core depends on but does not implement.

Every call returns a Result envelope; expected failures never raise.
"""
from typing import List, Optional, Protocol

from rbac_core.models.domain import AuditLogEntry, Permission, Role, User
from rbac_core.models.result import Result


class UserStore(Protocol):
    def get(self, user_id: str) -> Result[Optional[User]]: ...

    def get_by_username(self, username: str) -> Result[Optional[User]]: ...

    def get_by_email(self, email: str) -> Result[Optional[User]]: ...

    def list(self) -> Result[List[User]]: ...

    def list_by_role(self, role_id: str) -> Result[List[User]]: ...

    def add(self, user: User) -> Result[User]: ...

    def update(self, user: User) -> Result[User]: ...

    def delete(self, user_id: str) -> Result[None]: ...


class RoleStore(Protocol):
    def get(self, role_id: str) -> Result[Optional[Role]]: ...

    def get_by_key(self, key: str) -> Result[Optional[Role]]: ...

    def list(self) -> Result[List[Role]]: ...

    def add(self, role: Role) -> Result[Role]: ...

    def update(self, role: Role) -> Result[Role]: ...

    def delete(self, role_id: str) -> Result[None]: ...


class PermissionStore(Protocol):
    def list(self) -> Result[List[Permission]]: ...

    def get_by_key(self, key: str) -> Result[Optional[Permission]]: ...

    def add(self, permission: Permission) -> Result[Permission]: ...


class AuditStore(Protocol):
    """Append-only: there is deliberately no update or delete."""

    def append(self, entry: AuditLogEntry) -> Result[AuditLogEntry]: ...

    def list(self) -> Result[List[AuditLogEntry]]: ...


class KeyValueStore(Protocol):
    """Persisted session state (get/set/remove), e.g. browser storage or a cache."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...
