"""Enums for the RBAC core - these define the valid values for statuses, actions and states."""
from enum import Enum


class UserStatus(str, Enum):
    """Account status. Only active users may log in."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class RiskLevel(str, Enum):
    """Risk classification of a grantable permission."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PermissionCategory(str, Enum):
    MODULE = "module"
    ADMIN = "admin"


class Action(str, Enum):
    """Ability actions. MANAGE implies the four CRUD actions on its subject."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"


CRUD_ACTIONS = frozenset({Action.CREATE, Action.READ, Action.UPDATE, Action.DELETE})

# Wildcard subject: a grant on "all" applies to every subject
ALL_SUBJECTS = "all"


class UserModification(str, Enum):
    """Kinds of user mutation subject to the self-modification check."""
    EDIT = "edit"
    DELETE = "delete"
    CHANGE_ROLE = "change_role"
    DEACTIVATE = "deactivate"


class SessionState(str, Enum):
    """The three session states. Expired is terminal for a session."""
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class ExpiryReason(str, Enum):
    ABSOLUTE = "absolute"
    IDLE = "idle"


class AuditAction(str, Enum):
    """Action kinds recorded on an audit entry."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LOGIN = "login"
    LOGOUT = "logout"
    ROLE_CHANGE = "role_change"


class EntityType(str, Enum):
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    SESSION = "session"


class AuditEventKind(str, Enum):
    """Domain events accepted by the audit recorder."""
    ROLE_CREATED = "role_created"
    ROLE_UPDATED = "role_updated"
    ROLE_DELETED = "role_deleted"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    USER_ROLE_CHANGED = "user_role_changed"
    LOGIN = "login"
    LOGOUT = "logout"
