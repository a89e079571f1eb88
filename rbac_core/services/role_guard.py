"""
Precondition checks for role and user mutations.

Every check reads the stores at call time and returns a GuardDecision. Nothing
here writes, caches snapshots, or raises for a denial: callers branch on the
decision and only issue the write once it is allowed.

Invariants guarded:
- A role's permission set is never empty and only holds known keys
- Role keys, usernames and emails are unique
- System roles are never deleted
- A role with assigned users is never deleted
- Only existing, active roles are assignable
- Nobody edits, deletes, re-roles or deactivates their own account
- At least one active user holds an active admin role (last-admin invariant)
"""
from dataclasses import dataclass
from functools import wraps
from typing import Iterable, List, Optional, Set

from loguru import logger

from rbac_core.models.domain import Role, User
from rbac_core.models.enums import UserModification, UserStatus
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.base import PermissionStore, RoleStore, UserStore

LAST_ADMIN_REASON = "Cannot delete the last SUPER_ADMIN account. System requires at least one SUPER_ADMIN."

SELF_MODIFICATION_REASONS = {
    UserModification.EDIT: "Cannot edit your own account details. Ask another administrator for assistance.",
    UserModification.DELETE: "Cannot delete your own account. Ask another administrator for assistance.",
    UserModification.CHANGE_ROLE: "Cannot change your own role. Ask another administrator for assistance.",
    UserModification.DEACTIVATE: "Cannot deactivate your own account. Ask another administrator for assistance.",
}


@dataclass(frozen=True)
class GuardDecision:
    """Allowed, or denied with an error code and a reason fit to show a user."""
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, code: ErrorCode, reason: str) -> "GuardDecision":
        return cls(allowed=False, code=code.value, reason=reason)

    def to_result(self) -> Result[None]:
        if self.allowed:
            return Result.ok()
        return Result.fail(self.code, self.reason)

    def __bool__(self) -> bool:
        return self.allowed


class _StoreFailure(Exception):
    """Internal: a store read failed while evaluating a check."""
    def __init__(self, result: Result):
        self.result = result
        super().__init__(result.error.message if result.error else "storage failure")


def _unwrap(result: Result):
    if not result.success:
        raise _StoreFailure(result)
    return result.data


def _checked(func):
    """Turn store failures inside a check into a denial."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            decision = func(self, *args, **kwargs)
        except _StoreFailure as e:
            logger.error(f"Guard {func.__name__} could not read state: {e}")
            return GuardDecision(allowed=False, code=e.result.error_code, reason=e.result.error.message)
        if not decision.allowed:
            logger.info(f"Guard {func.__name__} denied ({decision.code}): {decision.reason}")
        return decision
    return wrapper


class RoleGuard:
    """Stateless between calls; holds only the stores it reads."""

    def __init__(self, users: UserStore, roles: RoleStore, permissions: PermissionStore):
        self.users = users
        self.roles = roles
        self.permissions = permissions

    # Roles

    @_checked
    def can_create_role(self, key: str, permission_keys: Iterable[str]) -> GuardDecision:
        permission_keys = list(permission_keys)
        if _unwrap(self.roles.get_by_key(key)) is not None:
            return GuardDecision.deny(ErrorCode.DUPLICATE_ROLE_KEY, f"Role key '{key}' already exists")
        return self._check_permission_set(permission_keys)

    @_checked
    def can_update_role(self, role_id: str, proposed: Role) -> GuardDecision:
        """
        Validate the role as it would look after the update.

        Denied if the permission set is empty or unknown, the key collides with
        another role, or the change strips admin capability from the last
        active administrators.
        """
        current = _unwrap(self.roles.get(role_id))
        if current is None:
            return GuardDecision.deny(ErrorCode.ROLE_NOT_FOUND, "Role not found")

        if proposed.key != current.key:
            clash = _unwrap(self.roles.get_by_key(proposed.key))
            if clash is not None and clash.id != role_id:
                return GuardDecision.deny(ErrorCode.DUPLICATE_ROLE_KEY, f"Role key '{proposed.key}' already exists")

        decision = self._check_permission_set(list(proposed.permission_keys))
        if not decision:
            return decision

        losing_admin = _grants_admin(current) and not _grants_admin(proposed)
        if losing_admin and self._holds_all_admins(current):
            return GuardDecision.deny(
                ErrorCode.MODIFICATION_NOT_ALLOWED,
                "Cannot deactivate or remove admin rights from the role held by the last SUPER_ADMIN. "
                "System requires at least one SUPER_ADMIN.",
            )
        return GuardDecision.allow()

    @_checked
    def can_delete_role(self, role_id: str) -> GuardDecision:
        """
        Denial order: system role, last-admin invariant, assigned users.
        """
        role = _unwrap(self.roles.get(role_id))
        if role is None:
            return GuardDecision.deny(ErrorCode.ROLE_NOT_FOUND, "Role not found")

        if role.is_system:
            return GuardDecision.deny(
                ErrorCode.DELETE_NOT_ALLOWED,
                "System roles cannot be deleted. You can deactivate them instead.",
            )

        if role.is_admin and self._is_last_admin_role(role):
            return GuardDecision.deny(ErrorCode.DELETE_NOT_ALLOWED, LAST_ADMIN_REASON)

        assigned = len(_unwrap(self.users.list_by_role(role_id)))
        if assigned > 0:
            return GuardDecision.deny(
                ErrorCode.DELETE_NOT_ALLOWED,
                f"Cannot delete role. {assigned} user(s) are currently assigned to this role.",
            )
        return GuardDecision.allow()

    # Users

    def can_modify_user(self, actor_id: str, target_id: str, kind: UserModification) -> GuardDecision:
        """Self-modification check; independent of the actor's permissions."""
        if actor_id == target_id:
            return GuardDecision.deny(ErrorCode.MODIFICATION_NOT_ALLOWED, SELF_MODIFICATION_REASONS[kind])
        return GuardDecision.allow()

    @_checked
    def can_create_user(self, username: str, email: str, role_id: str) -> GuardDecision:
        decision = self._check_identity_free(username, email, exclude_id=None)
        if not decision:
            return decision
        return self._check_role_assignable(role_id)

    @_checked
    def can_update_user(
        self,
        actor_id: str,
        target_id: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> GuardDecision:
        decision = self.can_modify_user(actor_id, target_id, UserModification.EDIT)
        if not decision:
            return decision
        target = _unwrap(self.users.get(target_id))
        if target is None:
            return GuardDecision.deny(ErrorCode.USER_NOT_FOUND, "User not found")
        return self._check_identity_free(
            username if username != target.username else None,
            email if email != target.email else None,
            exclude_id=target_id,
        )

    @_checked
    def can_change_role(self, actor_id: str, target_id: str, new_role_id: str) -> GuardDecision:
        decision = self.can_modify_user(actor_id, target_id, UserModification.CHANGE_ROLE)
        if not decision:
            return decision
        target = _unwrap(self.users.get(target_id))
        if target is None:
            return GuardDecision.deny(ErrorCode.USER_NOT_FOUND, "User not found")

        decision = self._check_role_assignable(new_role_id)
        if not decision:
            return decision

        new_role = _unwrap(self.roles.get(new_role_id))
        if not _grants_admin(new_role) and self._is_last_admin_user(target):
            return GuardDecision.deny(
                ErrorCode.MODIFICATION_NOT_ALLOWED,
                "Cannot move the last SUPER_ADMIN account to a non-admin role. System requires at least one SUPER_ADMIN.",
            )
        return GuardDecision.allow()

    @_checked
    def can_change_status(self, actor_id: str, target_id: str, new_status: UserStatus) -> GuardDecision:
        if new_status != UserStatus.ACTIVE:
            decision = self.can_modify_user(actor_id, target_id, UserModification.DEACTIVATE)
        else:
            decision = self.can_modify_user(actor_id, target_id, UserModification.EDIT)
        if not decision:
            return decision
        target = _unwrap(self.users.get(target_id))
        if target is None:
            return GuardDecision.deny(ErrorCode.USER_NOT_FOUND, "User not found")
        if new_status != UserStatus.ACTIVE and self._is_last_admin_user(target):
            return GuardDecision.deny(
                ErrorCode.MODIFICATION_NOT_ALLOWED,
                "Cannot deactivate the last SUPER_ADMIN account. System requires at least one SUPER_ADMIN.",
            )
        return GuardDecision.allow()

    @_checked
    def can_delete_user(self, actor_id: str, target_id: str) -> GuardDecision:
        decision = self.can_modify_user(actor_id, target_id, UserModification.DELETE)
        if not decision:
            return decision
        target = _unwrap(self.users.get(target_id))
        if target is None:
            return GuardDecision.deny(ErrorCode.USER_NOT_FOUND, "User not found")
        if self._is_last_admin_user(target):
            return GuardDecision.deny(ErrorCode.DELETE_NOT_ALLOWED, LAST_ADMIN_REASON)
        return GuardDecision.allow()

    @_checked
    def can_assign_role(self, role_id: str) -> GuardDecision:
        return self._check_role_assignable(role_id)

    # Shared checks; callers are wrapped by _checked

    def _check_permission_set(self, permission_keys: List[str]) -> GuardDecision:
        known = {p.key for p in _unwrap(self.permissions.list())}
        invalid = [k for k in permission_keys if k not in known]
        if invalid:
            return GuardDecision.deny(ErrorCode.INVALID_PERMISSIONS, f"Invalid permission keys: {', '.join(invalid)}")
        if not permission_keys:
            return GuardDecision.deny(ErrorCode.NO_PERMISSIONS, "Role must have at least one permission")
        return GuardDecision.allow()

    def _check_identity_free(
        self,
        username: Optional[str],
        email: Optional[str],
        exclude_id: Optional[str],
    ) -> GuardDecision:
        if username:
            existing = _unwrap(self.users.get_by_username(username))
            if existing is not None and existing.id != exclude_id:
                return GuardDecision.deny(ErrorCode.DUPLICATE_USERNAME, f"Username '{username}' already exists")
        if email:
            existing = _unwrap(self.users.get_by_email(email))
            if existing is not None and existing.id != exclude_id:
                return GuardDecision.deny(ErrorCode.DUPLICATE_EMAIL, f"Email '{email}' already exists")
        return GuardDecision.allow()

    def _check_role_assignable(self, role_id: str) -> GuardDecision:
        role = _unwrap(self.roles.get(role_id))
        if role is None:
            return GuardDecision.deny(ErrorCode.ROLE_NOT_FOUND, "Selected role does not exist")
        if not role.is_active:
            return GuardDecision.deny(ErrorCode.ROLE_INACTIVE, "Cannot assign inactive role to user")
        return GuardDecision.allow()

    def _active_admin_ids(self) -> Set[str]:
        """Ids of active users whose role is an active admin role."""
        admin_roles = {r.id for r in _unwrap(self.roles.list()) if _grants_admin(r)}
        return {u.id for u in _unwrap(self.users.list()) if u.is_active and u.role_id in admin_roles}

    def _is_last_admin_user(self, user: User) -> bool:
        return self._active_admin_ids() == {user.id}

    def _is_last_admin_role(self, role: Role) -> bool:
        """
        True when removing this role's admin capability would leave at most
        zero active administrators, i.e. no active admin exists outside it and
        it holds at most one itself.
        """
        in_role = {u.id for u in _unwrap(self.users.list_by_role(role.id)) if u.is_active}
        admins = self._active_admin_ids()
        elsewhere = admins - in_role
        return not elsewhere and len(in_role) <= 1

    def _holds_all_admins(self, role: Role) -> bool:
        """True when every active administrator is assigned to this role."""
        admins = self._active_admin_ids()
        if not admins:
            return False
        return all(
            u.role_id == role.id
            for u in _unwrap(self.users.list())
            if u.id in admins
        )


def _grants_admin(role: Optional[Role]) -> bool:
    return role is not None and role.is_admin and role.is_active
