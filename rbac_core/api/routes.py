"""API routes for authentication, roles, users, permissions and the audit trail."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import PlainTextResponse, Response

from rbac_core.api.dependencies import (
    Services,
    SessionRegistry,
    get_current_auth,
    get_registry,
    get_services,
    get_session_auth,
    raise_for_error,
    require,
)
from rbac_core.api.schemas import (
    AuditLogResponse,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    PermissionGroupResponse,
    PermissionResponse,
    RoleCreate,
    RoleDetailResponse,
    RoleResponse,
    RoleUpdate,
    SessionStatusResponse,
    UserCreate,
    UserResponse,
    UserRoleChange,
    UserStatusChange,
    UserUpdate,
    UserWithRoleResponse,
)
from rbac_core.models.enums import AuditAction, EntityType
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.auth_service import AuthService
from rbac_core.services.permission_catalog import group_by_module

router = APIRouter()

DENIAL_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Denied by ability check or mutation guard"},
}


# Auth endpoints
@router.post("/auth/login", response_model=LoginResponse, responses={401: {"model": ErrorResponse}})
def login(
    credentials: LoginRequest,
    request: Request,
    services: Services = Depends(get_services),
    registry: SessionRegistry = Depends(get_registry),
):
    """Check credentials and open a session; the returned token is the bearer token."""
    auth = AuthService(services.users, services.roles, services.audit, settings=services.settings)
    result = auth.login(
        credentials.username,
        credentials.password,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    raise_for_error(result)
    registry.add(auth.session)

    session = result.data
    return LoginResponse(
        token=session.token,
        user=UserResponse.model_validate(session.user),
        login_time=session.login_time,
        expires_at=session.expires_at,
        permissions=list(auth.ability.index),
    )


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    auth: AuthService = Depends(get_current_auth),
    registry: SessionRegistry = Depends(get_registry),
):
    token = auth.session.session.token
    auth.logout()
    registry.discard(token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/auth/refresh", response_model=SessionStatusResponse)
def refresh(auth: AuthService = Depends(get_current_auth)):
    """Extend the session by a full session duration."""
    raise_for_error(auth.refresh())
    return _session_status(auth)


@router.get("/auth/session", response_model=SessionStatusResponse)
def session_status(auth: AuthService = Depends(get_session_auth)):
    """Current session state, including the pre-expiry warning. Polling this is not activity."""
    auth.session.check()
    return _session_status(auth)


def _session_status(auth: AuthService) -> SessionStatusResponse:
    status_ = auth.status()
    current = auth.session.session
    return SessionStatusResponse(
        state=status_.state,
        show_warning=status_.show_warning,
        minutes_until_expiry=status_.minutes_until_expiry,
        message=status_.message,
        expiry_reason=status_.expiry_reason,
        user=UserResponse.model_validate(current.user) if current else None,
        role_key=auth.role.key if auth.role else None,
        permissions=list(auth.ability.index),
        expires_at=current.expires_at if current else None,
        last_activity=current.last_activity if current else None,
    )


# Role endpoints
@router.get("/roles", response_model=List[RoleResponse])
def list_roles(
    q: Optional[str] = None,
    active_only: bool = False,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "roles")),
):
    """List roles, optionally filtered by a search string or to active roles."""
    result = services.role_service.search_roles(q) if q else services.role_service.list_roles()
    raise_for_error(result)
    roles = [r for r in result.data if r.is_active or not active_only]
    return [RoleResponse.model_validate(r) for r in roles]


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED, responses=DENIAL_RESPONSES)
def create_role(
    data: RoleCreate,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("create", "roles")),
):
    result = services.role_service.create_role(
        auth.actor,
        name=data.name,
        key=data.key,
        permission_keys=data.permission_keys,
        description=data.description,
        is_active=data.is_active,
        is_admin=data.is_admin,
        reason=data.reason,
    )
    raise_for_error(result)
    return RoleResponse.model_validate(result.data)


@router.get("/roles/{role_id}", response_model=RoleDetailResponse)
def get_role(
    role_id: str,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "roles")),
):
    result = services.role_service.get_role(role_id)
    raise_for_error(result)
    count = services.role_service.count_users(role_id)
    raise_for_error(count)
    return RoleDetailResponse(**RoleResponse.model_validate(result.data).model_dump(), user_count=count.data)


@router.put("/roles/{role_id}", response_model=RoleResponse, responses=DENIAL_RESPONSES)
def update_role(
    role_id: str,
    data: RoleUpdate,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("update", "roles")),
):
    result = services.role_service.update_role(auth.actor, role_id, **data.model_dump())
    raise_for_error(result)
    return RoleResponse.model_validate(result.data)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT, responses=DENIAL_RESPONSES)
def delete_role(
    role_id: str,
    reason: Optional[str] = None,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("delete", "roles")),
):
    """
    Delete a role.

    WILL REFUSE if the role is a system role, holds the last administrator, or
    still has users assigned.
    """
    raise_for_error(services.role_service.delete_role(auth.actor, role_id, reason=reason))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/roles/{role_id}/duplicate", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
def duplicate_role(
    role_id: str,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("create", "roles")),
):
    result = services.role_service.duplicate_role(auth.actor, role_id)
    raise_for_error(result)
    return RoleResponse.model_validate(result.data)


# User endpoints
@router.get("/users", response_model=List[UserWithRoleResponse])
def list_users(
    role_id: Optional[str] = None,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "users")),
):
    result = services.user_service.list_users_with_roles()
    raise_for_error(result)
    return [
        UserWithRoleResponse(**UserResponse.model_validate(user).model_dump(), role_name=role.name if role else None)
        for user, role in result.data
        if role_id is None or user.role_id == role_id
    ]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    user_id: str,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "users")),
):
    result = services.user_service.get_user(user_id)
    raise_for_error(result)
    return UserResponse.model_validate(result.data)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED, responses=DENIAL_RESPONSES)
def create_user(
    data: UserCreate,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("create", "users")),
):
    result = services.user_service.create_user(
        auth.actor,
        username=data.username,
        email=data.email,
        full_name=data.full_name,
        password=data.password,
        role_id=data.role_id,
        status=data.status,
    )
    raise_for_error(result)
    return UserResponse.model_validate(result.data)


@router.put("/users/{user_id}", response_model=UserResponse, responses=DENIAL_RESPONSES)
def update_user(
    user_id: str,
    data: UserUpdate,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("update", "users")),
):
    result = services.user_service.update_user(auth.actor, user_id, **data.model_dump())
    raise_for_error(result)
    return UserResponse.model_validate(result.data)


@router.put("/users/{user_id}/role", response_model=UserResponse, responses=DENIAL_RESPONSES)
def change_user_role(
    user_id: str,
    data: UserRoleChange,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("update", "users")),
):
    """Move a user to another role. Takes effect on the user's next request."""
    result = services.user_service.change_role(auth.actor, user_id, data.role_id, reason=data.reason)
    raise_for_error(result)
    return UserResponse.model_validate(result.data)


@router.put("/users/{user_id}/status", response_model=UserResponse, responses=DENIAL_RESPONSES)
def change_user_status(
    user_id: str,
    data: UserStatusChange,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("update", "users")),
):
    result = services.user_service.set_status(auth.actor, user_id, data.status)
    raise_for_error(result)
    return UserResponse.model_validate(result.data)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT, responses=DENIAL_RESPONSES)
def delete_user(
    user_id: str,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("delete", "users")),
):
    raise_for_error(services.user_service.delete_user(auth.actor, user_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Permission endpoints
@router.get("/permissions", response_model=List[PermissionResponse])
def list_permissions(
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "permissions")),
):
    result = services.permissions.list()
    raise_for_error(result)
    return [PermissionResponse.model_validate(p) for p in result.data]


@router.get("/permissions/grouped", response_model=List[PermissionGroupResponse])
def list_permissions_grouped(
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "permissions")),
):
    """Permissions grouped by module, for permission pickers."""
    result = services.permissions.list()
    raise_for_error(result)
    return [
        PermissionGroupResponse(
            module=module,
            module_display_name=permissions[0].module_display_name,
            permissions=[PermissionResponse.model_validate(p) for p in permissions],
        )
        for module, permissions in group_by_module(result.data).items()
    ]


# Audit endpoints
@router.get("/audit-logs", response_model=List[AuditLogResponse])
def list_audit_logs(
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    entity_type: Optional[EntityType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "audit_logs")),
):
    """Audit entries, newest first, matching every given filter."""
    result = services.audit.query(user_id, action, entity_type, start, end, newest_first=True)
    raise_for_error(result)
    return [AuditLogResponse.model_validate(e) for e in result.data]


@router.get("/audit-logs/export", response_class=PlainTextResponse)
def export_audit_logs(
    format: str = Query("csv", pattern="^(csv|json)$"),
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    entity_type: Optional[EntityType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    services: Services = Depends(get_services),
    auth: AuthService = Depends(require("read", "audit_logs")),
):
    result = services.audit.query(user_id, action, entity_type, start, end, newest_first=True)
    raise_for_error(result)
    if format == "json":
        return Response(
            content=AuditRecorder.export_json(result.data),
            media_type="application/json",
            headers={"Content-Disposition": "attachment; filename=audit-logs.json"},
        )
    return Response(
        content=AuditRecorder.export_csv(result.data),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=audit-logs.csv"},
    )
