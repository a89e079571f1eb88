"""
Default permission catalogue, system roles and bootstrap administrator.

seed_defaults only fills stores that are empty, so it is safe to run on every
startup.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from rbac_core.config import Settings, get_settings
from rbac_core.models.domain import Permission, Role, User
from rbac_core.models.enums import Action, PermissionCategory, RiskLevel, UserStatus
from rbac_core.repositories.base import PermissionStore, RoleStore, UserStore
from rbac_core.services.passwords import hash_password

MODULES: Dict[str, str] = {
    "users": "Users",
    "roles": "Roles",
    "permissions": "Permissions",
    "audit_logs": "Audit Logs",
    "security_groups": "Security Groups",
    "reports": "Reports",
}

ACTION_RISK: Dict[Action, RiskLevel] = {
    Action.READ: RiskLevel.LOW,
    Action.CREATE: RiskLevel.MEDIUM,
    Action.UPDATE: RiskLevel.MEDIUM,
    Action.DELETE: RiskLevel.HIGH,
    Action.MANAGE: RiskLevel.CRITICAL,
}

SUPER_ADMIN_ROLE_ID = "role_super_admin"
SECURITY_ADMIN_ROLE_ID = "role_security_admin"
AUDITOR_ROLE_ID = "role_auditor"
BUSINESS_USER_ROLE_ID = "role_business_user"
BOOTSTRAP_ADMIN_ID = "user_super_admin"


def default_permissions() -> List[Permission]:
    permissions = []
    for module, module_name in MODULES.items():
        for action in Action:
            permissions.append(Permission(
                id=f"perm_{module}_{action.value}",
                key=f"{module}.{action.value}",
                module=module,
                action=action.value,
                display_name=action.value.capitalize(),
                description=f"{action.value.capitalize()} {module_name.lower()}",
                module_display_name=module_name,
                risk_level=ACTION_RISK[action],
                category=PermissionCategory.MODULE,
            ))
    permissions.append(Permission(
        id="perm_all_manage",
        key="all.manage",
        module="all",
        action=Action.MANAGE.value,
        display_name="Manage everything",
        description="Full control over every module",
        module_display_name="System",
        risk_level=RiskLevel.CRITICAL,
        category=PermissionCategory.ADMIN,
    ))
    return permissions


def default_roles(now: datetime) -> List[Role]:
    def role(role_id, name, key, description, keys, is_system=True, is_admin=False):
        return Role(
            id=role_id,
            name=name,
            key=key,
            permission_keys=tuple(keys),
            description=description,
            is_system=is_system,
            is_active=True,
            is_admin=is_admin,
            created_at=now,
            created_by="system",
            updated_at=now,
            updated_by="system",
        )

    return [
        role(SUPER_ADMIN_ROLE_ID, "Super Admin", "super_admin",
             "Full access to every module", ["all.manage"], is_admin=True),
        role(SECURITY_ADMIN_ROLE_ID, "Security Admin", "security_admin",
             "Manages users and security groups",
             ["users.read", "users.create", "users.update", "roles.read",
              "permissions.read", "security_groups.manage", "audit_logs.read"]),
        role(AUDITOR_ROLE_ID, "Auditor", "auditor",
             "Read-only access for compliance reviews",
             ["users.read", "roles.read", "permissions.read", "audit_logs.read", "reports.read"]),
        role(BUSINESS_USER_ROLE_ID, "Business User", "business_user",
             "Day-to-day reporting access",
             ["reports.read", "security_groups.read"], is_system=False),
    ]


def seed_defaults(
    users: UserStore,
    roles: RoleStore,
    permissions: PermissionStore,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> None:
    """Fill empty stores with the default catalogue, roles and bootstrap admin."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    existing = permissions.list()
    if existing.success and not existing.data:
        for permission in default_permissions():
            permissions.add(permission)
        logger.info("Seeded default permission catalogue")

    existing = roles.list()
    if existing.success and not existing.data:
        for role in default_roles(now):
            roles.add(role)
        logger.info("Seeded default roles")

    existing = users.list()
    if existing.success and not existing.data:
        users.add(User(
            id=BOOTSTRAP_ADMIN_ID,
            username=settings.seed_admin_username,
            email=settings.seed_admin_email,
            full_name="Super Administrator",
            role_id=SUPER_ADMIN_ROLE_ID,
            status=UserStatus.ACTIVE,
            created_at=now,
            password_hash=hash_password(settings.seed_admin_password, settings.password_hash_rounds),
        ))
        logger.info(f"Seeded bootstrap administrator '{settings.seed_admin_username}'")
