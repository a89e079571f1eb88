"""
Domain objects consumed by the authorization core.

These are plain dataclasses; persistence rows live in models/tables.py and are
converted at the repository boundary.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from rbac_core.models.enums import (
    AuditAction,
    EntityType,
    PermissionCategory,
    RiskLevel,
    UserStatus,
)


@dataclass(frozen=True)
class Permission:
    """
    A grantable capability identified by a "subject.action" key.

    Permissions are read-only reference data and are granted to roles, never to users.
    """
    id: str
    key: str
    module: str
    action: str
    display_name: str = ""
    description: str = ""
    module_display_name: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    category: PermissionCategory = PermissionCategory.MODULE

    @property
    def subject(self) -> str:
        return self.module


@dataclass(frozen=True)
class Role:
    """
    A named bundle of permission keys assignable to users.

    Invariants:
    - key is unique across roles
    - permission_keys is never empty after creation or update
    - is_system roles can be edited but never deleted
    """
    id: str
    name: str
    key: str
    permission_keys: Tuple[str, ...]
    description: str = ""
    is_system: bool = False
    is_active: bool = True
    is_admin: bool = False
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def with_changes(self, **changes) -> "Role":
        if "permission_keys" in changes:
            changes["permission_keys"] = tuple(changes["permission_keys"])
        return replace(self, **changes)


@dataclass(frozen=True)
class User:
    id: str
    username: str
    email: str
    full_name: str
    role_id: str
    status: UserStatus = UserStatus.ACTIVE
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    password_hash: str = field(default="", repr=False)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def with_changes(self, **changes) -> "User":
        return replace(self, **changes)

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role_id": self.role_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login": self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_public_dict(cls, data: Dict[str, Any]) -> "User":
        """Inverse of public_dict. Raises KeyError/ValueError on malformed input."""
        return cls(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            full_name=data["full_name"],
            role_id=data["role_id"],
            status=UserStatus(data["status"]),
            created_at=_parse_optional_datetime(data.get("created_at")),
            last_login=_parse_optional_datetime(data.get("last_login")),
        )


@dataclass(frozen=True)
class AuthSession:
    """The derived session: token, timestamps and the authenticated user."""
    token: str
    user: User
    login_time: datetime
    expires_at: datetime
    last_activity: datetime


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


@dataclass(frozen=True)
class Actor:
    """Who performed an audited action."""
    user_id: str
    username: str


@dataclass(frozen=True)
class AuditLogEntry:
    """
    Immutable audit record.

    Invariants:
    - Once written, never edited or deleted
    - Append-only, ordered by timestamp
    """
    id: str
    timestamp: datetime
    user_id: str
    username: str
    action: AuditAction
    entity_type: EntityType
    entity_id: str
    entity_name: str
    changes: Tuple[FieldChange, ...] = ()
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "username": self.username,
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "changes": [c.to_dict() for c in self.changes],
            "reason": self.reason,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            user_id=data["user_id"],
            username=data["username"],
            action=AuditAction(data["action"]),
            entity_type=EntityType(data["entity_type"]),
            entity_id=data["entity_id"],
            entity_name=data["entity_name"],
            changes=tuple(
                FieldChange(c["field"], c.get("old_value"), c.get("new_value"))
                for c in data.get("changes") or []
            ),
            reason=data.get("reason"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


def diff_fields(before: Any, after: Any, fields: List[str]) -> List[FieldChange]:
    """Field-level changes between two snapshots of the same entity."""
    changes = []
    for name in fields:
        old_value = getattr(before, name)
        new_value = getattr(after, name)
        if old_value != new_value:
            changes.append(FieldChange(name, _plain(old_value), _plain(new_value)))
    return changes


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return list(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
