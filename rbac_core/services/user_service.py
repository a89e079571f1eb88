"""
User management.

Same discipline as roles: guard, then write, then audit.
"""
import uuid
from typing import List, Optional, Tuple

from loguru import logger

from rbac_core.config import Settings, get_settings
from rbac_core.models.domain import Actor, FieldChange, Role, User, diff_fields
from rbac_core.models.enums import UserStatus
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.base import RoleStore, UserStore
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.passwords import MAX_PASSWORD_BYTES, hash_password, password_too_long
from rbac_core.services.role_guard import GuardDecision, RoleGuard
from rbac_core.services.session_manager import Clock, utcnow

USER_AUDIT_FIELDS = ["username", "email", "full_name"]


def _denied(decision: GuardDecision) -> Result:
    return Result.fail(decision.code, decision.reason)


class UserService:
    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        guard: RoleGuard,
        audit: AuditRecorder,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.users = users
        self.roles = roles
        self.guard = guard
        self.audit = audit
        self.settings = settings or get_settings()
        self.clock = clock

    # Queries

    def list_users(self) -> Result[List[User]]:
        return self.users.list()

    def list_users_with_roles(self) -> Result[List[Tuple[User, Optional[Role]]]]:
        users = self.users.list()
        if not users.success:
            return Result.from_error(users.error)
        roles = self.roles.list()
        if not roles.success:
            return Result.from_error(roles.error)
        by_id = {r.id: r for r in roles.data}
        return Result.ok([(u, by_id.get(u.role_id)) for u in users.data])

    def get_user(self, user_id: str) -> Result[User]:
        found = self.users.get(user_id)
        if not found.success:
            return found
        if found.data is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "User not found")
        return found

    def users_by_role(self, role_id: str) -> Result[List[User]]:
        return self.users.list_by_role(role_id)

    # Mutations

    def create_user(
        self,
        actor: Actor,
        username: str,
        email: str,
        full_name: str,
        password: str,
        role_id: str,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> Result[User]:
        decision = self.guard.can_create_user(username, email, role_id)
        if not decision:
            return _denied(decision)
        if password_too_long(password):
            return Result.fail(
                ErrorCode.INVALID_PASSWORD, f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
            )

        user = User(
            id=f"user_{uuid.uuid4().hex[:12]}",
            username=username,
            email=email,
            full_name=full_name,
            role_id=role_id,
            status=status,
            created_at=self.clock(),
            password_hash=hash_password(password, self.settings.password_hash_rounds),
        )
        added = self.users.add(user)
        if not added.success:
            return added

        self.audit.user_created(actor, user, self._role_name(role_id))
        logger.info(f"User '{username}' created by {actor.username}")
        return Result.ok(user)

    def update_user(
        self,
        actor: Actor,
        user_id: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> Result[User]:
        decision = self.guard.can_update_user(actor.user_id, user_id, username=username, email=email)
        if not decision:
            return _denied(decision)

        current = self.get_user(user_id)
        if not current.success:
            return current
        changes = {
            field: value
            for field, value in (("username", username), ("email", email), ("full_name", full_name))
            if value is not None
        }
        updated = current.data.with_changes(**changes)
        written = self.users.update(updated)
        if not written.success:
            return written

        field_changes = diff_fields(current.data, updated, USER_AUDIT_FIELDS)
        if field_changes:
            self.audit.user_updated(actor, updated, field_changes)
        logger.info(f"User '{updated.username}' updated by {actor.username}")
        return Result.ok(updated)

    def change_role(self, actor: Actor, user_id: str, new_role_id: str, reason: Optional[str] = None) -> Result[User]:
        decision = self.guard.can_change_role(actor.user_id, user_id, new_role_id)
        if not decision:
            return _denied(decision)

        current = self.get_user(user_id)
        if not current.success:
            return current
        updated = current.data.with_changes(role_id=new_role_id)
        written = self.users.update(updated)
        if not written.success:
            return written

        old_name, new_name = self._role_name(current.data.role_id), self._role_name(new_role_id)
        self.audit.user_role_changed(actor, updated, old_name, new_name, reason=reason)
        logger.info(f"User '{updated.username}' moved from '{old_name}' to '{new_name}' by {actor.username}")
        return Result.ok(updated)

    def set_status(self, actor: Actor, user_id: str, status: UserStatus) -> Result[User]:
        decision = self.guard.can_change_status(actor.user_id, user_id, status)
        if not decision:
            return _denied(decision)

        current = self.get_user(user_id)
        if not current.success:
            return current
        if current.data.status == status:
            return current
        updated = current.data.with_changes(status=status)
        written = self.users.update(updated)
        if not written.success:
            return written

        self.audit.user_updated(
            actor, updated, [FieldChange("status", current.data.status.value, status.value)]
        )
        logger.info(f"User '{updated.username}' set to {status.value} by {actor.username}")
        return Result.ok(updated)

    def delete_user(self, actor: Actor, user_id: str) -> Result[None]:
        decision = self.guard.can_delete_user(actor.user_id, user_id)
        if not decision:
            return _denied(decision)

        current = self.get_user(user_id)
        if not current.success:
            return Result.from_error(current.error)
        deleted = self.users.delete(user_id)
        if not deleted.success:
            return deleted

        self.audit.user_deleted(actor, current.data)
        logger.info(f"User '{current.data.username}' deleted by {actor.username}")
        return Result.ok()

    def _role_name(self, role_id: str) -> str:
        found = self.roles.get(role_id)
        if found.success and found.data is not None:
            return found.data.name
        return role_id
