"""
Role management.

Every mutation runs guard -> write -> audit, in that order. A denied guard
means no write is issued; a failed audit never undoes the write.
"""
import uuid
from typing import Callable, Iterable, List, Optional

from loguru import logger

from rbac_core.models.domain import Actor, Role, diff_fields
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.base import RoleStore, UserStore
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.role_guard import GuardDecision, RoleGuard
from rbac_core.services.session_manager import Clock, utcnow

ROLE_AUDIT_FIELDS = ["name", "key", "description", "permission_keys", "is_active", "is_admin"]


def _denied(decision: GuardDecision) -> Result:
    return Result.fail(decision.code, decision.reason)


class RoleService:
    def __init__(
        self,
        roles: RoleStore,
        users: UserStore,
        guard: RoleGuard,
        audit: AuditRecorder,
        clock: Clock = utcnow,
    ):
        self.roles = roles
        self.users = users
        self.guard = guard
        self.audit = audit
        self.clock = clock

    # Queries

    def list_roles(self) -> Result[List[Role]]:
        return self.roles.list()

    def get_role(self, role_id: str) -> Result[Role]:
        found = self.roles.get(role_id)
        if not found.success:
            return found
        if found.data is None:
            return Result.fail(ErrorCode.ROLE_NOT_FOUND, "Role not found")
        return found

    def search_roles(self, query: str) -> Result[List[Role]]:
        """Case-insensitive match on name, key or description."""
        needle = query.lower()
        return self._filter(
            lambda r: needle in r.name.lower() or needle in r.key.lower() or needle in r.description.lower()
        )

    def active_roles(self) -> Result[List[Role]]:
        return self._filter(lambda r: r.is_active)

    def system_roles(self) -> Result[List[Role]]:
        return self._filter(lambda r: r.is_system)

    def custom_roles(self) -> Result[List[Role]]:
        return self._filter(lambda r: not r.is_system)

    def count_users(self, role_id: str) -> Result[int]:
        listed = self.users.list_by_role(role_id)
        if not listed.success:
            return Result.from_error(listed.error)
        return Result.ok(len(listed.data))

    def _filter(self, predicate: Callable[[Role], bool]) -> Result[List[Role]]:
        listed = self.roles.list()
        if not listed.success:
            return listed
        return Result.ok([r for r in listed.data if predicate(r)])

    # Mutations

    def create_role(
        self,
        actor: Actor,
        name: str,
        key: str,
        permission_keys: Iterable[str],
        description: str = "",
        is_active: bool = True,
        is_admin: bool = False,
        is_system: bool = False,
        reason: Optional[str] = None,
    ) -> Result[Role]:
        permission_keys = list(permission_keys)
        decision = self.guard.can_create_role(key, permission_keys)
        if not decision:
            return _denied(decision)

        now = self.clock()
        role = Role(
            id=f"role_{uuid.uuid4().hex[:12]}",
            name=name,
            key=key,
            permission_keys=tuple(permission_keys),
            description=description,
            is_system=is_system,
            is_active=is_active,
            is_admin=is_admin,
            created_at=now,
            created_by=actor.user_id,
            updated_at=now,
            updated_by=actor.user_id,
        )
        added = self.roles.add(role)
        if not added.success:
            return added

        self.audit.role_created(actor, role, reason=reason)
        logger.info(f"Role '{role.key}' created by {actor.username}")
        return Result.ok(role)

    def update_role(
        self,
        actor: Actor,
        role_id: str,
        name: Optional[str] = None,
        key: Optional[str] = None,
        description: Optional[str] = None,
        permission_keys: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
        is_admin: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> Result[Role]:
        """Apply the given fields; None leaves a field unchanged."""
        found = self.get_role(role_id)
        if not found.success:
            return found
        current = found.data

        changes = {
            field: value
            for field, value in (
                ("name", name),
                ("key", key),
                ("description", description),
                ("permission_keys", permission_keys),
                ("is_active", is_active),
                ("is_admin", is_admin),
            )
            if value is not None
        }
        proposed = current.with_changes(**changes, updated_at=self.clock(), updated_by=actor.user_id)

        decision = self.guard.can_update_role(role_id, proposed)
        if not decision:
            return _denied(decision)

        written = self.roles.update(proposed)
        if not written.success:
            return written

        field_changes = diff_fields(current, proposed, ROLE_AUDIT_FIELDS)
        if field_changes:
            self.audit.role_updated(actor, proposed, field_changes, reason=reason)
        logger.info(f"Role '{proposed.key}' updated by {actor.username} ({len(field_changes)} field(s))")
        return Result.ok(proposed)

    def delete_role(self, actor: Actor, role_id: str, reason: Optional[str] = None) -> Result[None]:
        found = self.get_role(role_id)
        if not found.success:
            return Result.from_error(found.error)
        role = found.data

        decision = self.guard.can_delete_role(role_id)
        if not decision:
            return _denied(decision)

        deleted = self.roles.delete(role_id)
        if not deleted.success:
            return deleted

        self.audit.role_deleted(actor, role, reason=reason)
        logger.info(f"Role '{role.key}' deleted by {actor.username}")
        return Result.ok()

    def duplicate_role(self, actor: Actor, role_id: str) -> Result[Role]:
        """Copy a role as a custom, non-admin role named "<name> (Copy)"."""
        found = self.get_role(role_id)
        if not found.success:
            return found
        role = found.data
        return self.create_role(
            actor,
            name=f"{role.name} (Copy)",
            key=f"{role.key}_copy_{uuid.uuid4().hex[:8]}",
            permission_keys=role.permission_keys,
            description=role.description,
            is_active=role.is_active,
            is_system=False,
        )
