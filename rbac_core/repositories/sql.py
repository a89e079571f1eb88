"""
SQLAlchemy-backed repositories.

Rows are converted to domain dataclasses at this boundary. Database errors are
rolled back, logged and returned as STORAGE_ERROR results.
"""
from datetime import datetime, timezone
from functools import wraps
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rbac_core.models.domain import AuditLogEntry, FieldChange, Permission, Role, User
from rbac_core.models.result import ErrorCode, Result
from rbac_core.models.tables import AuditLogRow, PermissionRow, RoleRow, UserRow


def _storage_call(func):
    """Turn SQLAlchemy errors into STORAGE_ERROR results after rolling back."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"{type(self).__name__}.{func.__name__} failed: {e}")
            return Result.fail(ErrorCode.STORAGE_ERROR, "Storage operation failed", details=str(e))
    return wrapper


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every timestamp the core writes is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_user(row: UserRow) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        full_name=row.full_name,
        role_id=row.role_id,
        status=row.status,
        created_at=_aware(row.created_at),
        last_login=_aware(row.last_login),
        password_hash=row.password_hash,
    )


def _to_role(row: RoleRow) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        key=row.key,
        permission_keys=tuple(p.key for p in row.permissions),
        description=row.description,
        is_system=row.is_system,
        is_active=row.is_active,
        is_admin=row.is_admin,
        created_at=_aware(row.created_at),
        created_by=row.created_by,
        updated_at=_aware(row.updated_at),
        updated_by=row.updated_by,
    )


def _to_permission(row: PermissionRow) -> Permission:
    return Permission(
        id=row.id,
        key=row.key,
        module=row.module,
        action=row.action,
        display_name=row.display_name,
        description=row.description,
        module_display_name=row.module_display_name,
        risk_level=row.risk_level,
        category=row.category,
    )


def _to_entry(row: AuditLogRow) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        timestamp=_aware(row.timestamp),
        user_id=row.user_id,
        username=row.username,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        entity_name=row.entity_name,
        changes=tuple(
            FieldChange(c["field"], c.get("old_value"), c.get("new_value"))
            for c in row.changes_json or []
        ),
        reason=row.reason,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


class SqlUserStore:
    def __init__(self, db: Session):
        self.db = db

    @_storage_call
    def get(self, user_id: str) -> Result[Optional[User]]:
        row = self.db.get(UserRow, user_id)
        return Result.ok(_to_user(row) if row else None)

    @_storage_call
    def get_by_username(self, username: str) -> Result[Optional[User]]:
        row = self.db.scalars(select(UserRow).where(UserRow.username == username)).first()
        return Result.ok(_to_user(row) if row else None)

    @_storage_call
    def get_by_email(self, email: str) -> Result[Optional[User]]:
        row = self.db.scalars(select(UserRow).where(UserRow.email == email)).first()
        return Result.ok(_to_user(row) if row else None)

    @_storage_call
    def list(self) -> Result[List[User]]:
        rows = self.db.scalars(select(UserRow).order_by(UserRow.created_at)).all()
        return Result.ok([_to_user(r) for r in rows])

    @_storage_call
    def list_by_role(self, role_id: str) -> Result[List[User]]:
        rows = self.db.scalars(select(UserRow).where(UserRow.role_id == role_id)).all()
        return Result.ok([_to_user(r) for r in rows])

    @_storage_call
    def add(self, user: User) -> Result[User]:
        row = UserRow(id=user.id)
        self._apply(row, user)
        self.db.add(row)
        self.db.commit()
        return Result.ok(user)

    @_storage_call
    def update(self, user: User) -> Result[User]:
        row = self.db.get(UserRow, user.id)
        if row is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        self._apply(row, user)
        self.db.commit()
        return Result.ok(user)

    @_storage_call
    def delete(self, user_id: str) -> Result[None]:
        row = self.db.get(UserRow, user_id)
        if row is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        self.db.delete(row)
        self.db.commit()
        return Result.ok()

    @staticmethod
    def _apply(row: UserRow, user: User) -> None:
        row.username = user.username
        row.email = user.email
        row.full_name = user.full_name
        row.role_id = user.role_id
        row.status = user.status
        row.password_hash = user.password_hash
        row.created_at = user.created_at
        row.last_login = user.last_login


class SqlRoleStore:
    def __init__(self, db: Session):
        self.db = db

    @_storage_call
    def get(self, role_id: str) -> Result[Optional[Role]]:
        row = self.db.get(RoleRow, role_id)
        return Result.ok(_to_role(row) if row else None)

    @_storage_call
    def get_by_key(self, key: str) -> Result[Optional[Role]]:
        row = self.db.scalars(select(RoleRow).where(RoleRow.key == key)).first()
        return Result.ok(_to_role(row) if row else None)

    @_storage_call
    def list(self) -> Result[List[Role]]:
        rows = self.db.scalars(select(RoleRow).order_by(RoleRow.name)).all()
        return Result.ok([_to_role(r) for r in rows])

    @_storage_call
    def add(self, role: Role) -> Result[Role]:
        row = RoleRow(id=role.id)
        self._apply(row, role)
        self.db.add(row)
        self.db.commit()
        return Result.ok(role)

    @_storage_call
    def update(self, role: Role) -> Result[Role]:
        row = self.db.get(RoleRow, role.id)
        if row is None:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "Role not found")
        self._apply(row, role)
        self.db.commit()
        return Result.ok(role)

    @_storage_call
    def delete(self, role_id: str) -> Result[None]:
        row = self.db.get(RoleRow, role_id)
        if row is None:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "Role not found")
        self.db.delete(row)
        self.db.commit()
        return Result.ok()

    def _apply(self, row: RoleRow, role: Role) -> None:
        row.name = role.name
        row.key = role.key
        row.description = role.description
        row.is_system = role.is_system
        row.is_active = role.is_active
        row.is_admin = role.is_admin
        row.created_at = role.created_at
        row.created_by = role.created_by
        row.updated_at = role.updated_at
        row.updated_by = role.updated_by
        row.permissions = list(
            self.db.scalars(
                select(PermissionRow).where(PermissionRow.key.in_(role.permission_keys))
            ).all()
        )


class SqlPermissionStore:
    def __init__(self, db: Session):
        self.db = db

    @_storage_call
    def list(self) -> Result[List[Permission]]:
        rows = self.db.scalars(select(PermissionRow).order_by(PermissionRow.module, PermissionRow.key)).all()
        return Result.ok([_to_permission(r) for r in rows])

    @_storage_call
    def get_by_key(self, key: str) -> Result[Optional[Permission]]:
        row = self.db.scalars(select(PermissionRow).where(PermissionRow.key == key)).first()
        return Result.ok(_to_permission(row) if row else None)

    @_storage_call
    def add(self, permission: Permission) -> Result[Permission]:
        self.db.add(PermissionRow(
            id=permission.id,
            key=permission.key,
            module=permission.module,
            action=permission.action,
            display_name=permission.display_name,
            module_display_name=permission.module_display_name,
            description=permission.description,
            risk_level=permission.risk_level,
            category=permission.category,
        ))
        self.db.commit()
        return Result.ok(permission)


class SqlAuditStore:
    """Insert-only; there is no code path that updates or deletes an audit row."""

    def __init__(self, db: Session):
        self.db = db

    @_storage_call
    def append(self, entry: AuditLogEntry) -> Result[AuditLogEntry]:
        self.db.add(AuditLogRow(
            id=entry.id,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            username=entry.username,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            entity_name=entry.entity_name,
            changes_json=[c.to_dict() for c in entry.changes] or None,
            reason=entry.reason,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
        ))
        self.db.commit()
        return Result.ok(entry)

    @_storage_call
    def list(self) -> Result[List[AuditLogEntry]]:
        rows = self.db.scalars(select(AuditLogRow).order_by(AuditLogRow.timestamp, AuditLogRow.seq)).all()
        return Result.ok([_to_entry(r) for r in rows])
