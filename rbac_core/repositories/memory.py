"""In-memory repositories, the equivalent of the mock JSON data source."""
from typing import Dict, List, Optional

from rbac_core.models.domain import AuditLogEntry, Permission, Role, User
from rbac_core.models.result import ErrorCode, Result


class InMemoryUserStore:
    def __init__(self, users: Optional[List[User]] = None):
        self._users: Dict[str, User] = {}
        for user in users or []:
            self._users[user.id] = user

    def get(self, user_id: str) -> Result[Optional[User]]:
        return Result.ok(self._users.get(user_id))

    def get_by_username(self, username: str) -> Result[Optional[User]]:
        return Result.ok(next((u for u in self._users.values() if u.username == username), None))

    def get_by_email(self, email: str) -> Result[Optional[User]]:
        return Result.ok(next((u for u in self._users.values() if u.email == email), None))

    def list(self) -> Result[List[User]]:
        return Result.ok(list(self._users.values()))

    def list_by_role(self, role_id: str) -> Result[List[User]]:
        return Result.ok([u for u in self._users.values() if u.role_id == role_id])

    def add(self, user: User) -> Result[User]:
        if user.id in self._users:
            return Result.fail(ErrorCode.STORAGE_ERROR, f"User '{user.id}' already stored")
        self._users[user.id] = user
        return Result.ok(user)

    def update(self, user: User) -> Result[User]:
        if user.id not in self._users:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        self._users[user.id] = user
        return Result.ok(user)

    def delete(self, user_id: str) -> Result[None]:
        if self._users.pop(user_id, None) is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        return Result.ok()


class InMemoryRoleStore:
    def __init__(self, roles: Optional[List[Role]] = None):
        self._roles: Dict[str, Role] = {}
        for role in roles or []:
            self._roles[role.id] = role

    def get(self, role_id: str) -> Result[Optional[Role]]:
        return Result.ok(self._roles.get(role_id))

    def get_by_key(self, key: str) -> Result[Optional[Role]]:
        return Result.ok(next((r for r in self._roles.values() if r.key == key), None))

    def list(self) -> Result[List[Role]]:
        return Result.ok(list(self._roles.values()))

    def add(self, role: Role) -> Result[Role]:
        if role.id in self._roles:
            return Result.fail(ErrorCode.STORAGE_ERROR, f"Role '{role.id}' already stored")
        self._roles[role.id] = role
        return Result.ok(role)

    def update(self, role: Role) -> Result[Role]:
        if role.id not in self._roles:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "Role not found")
        self._roles[role.id] = role
        return Result.ok(role)

    def delete(self, role_id: str) -> Result[None]:
        if self._roles.pop(role_id, None) is None:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "Role not found")
        return Result.ok()


class InMemoryPermissionStore:
    def __init__(self, permissions: Optional[List[Permission]] = None):
        self._permissions: Dict[str, Permission] = {}
        for permission in permissions or []:
            self._permissions[permission.key] = permission

    def list(self) -> Result[List[Permission]]:
        return Result.ok(list(self._permissions.values()))

    def get_by_key(self, key: str) -> Result[Optional[Permission]]:
        return Result.ok(self._permissions.get(key))

    def add(self, permission: Permission) -> Result[Permission]:
        self._permissions[permission.key] = permission
        return Result.ok(permission)


class InMemoryAuditStore:
    def __init__(self):
        self._entries: List[AuditLogEntry] = []

    def append(self, entry: AuditLogEntry) -> Result[AuditLogEntry]:
        self._entries.append(entry)
        return Result.ok(entry)

    def list(self) -> Result[List[AuditLogEntry]]:
        # Copy so callers cannot mutate the trail
        return Result.ok(list(self._entries))


class InMemoryKeyValueStore:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)
