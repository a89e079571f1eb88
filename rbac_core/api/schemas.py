"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbac_core.models.enums import (
    AuditAction,
    EntityType,
    ExpiryReason,
    PermissionCategory,
    RiskLevel,
    SessionState,
    UserStatus,
)
from rbac_core.services.passwords import MAX_PASSWORD_BYTES, password_too_long

ROLE_KEY_PATTERN = r"^[a-z][a-z0-9_]*$"


class ErrorResponse(BaseModel):
    code: str
    message: str


# Auth schemas
class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    full_name: str
    role_id: str
    status: UserStatus
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class LoginResponse(BaseModel):
    token: str
    user: UserResponse
    login_time: datetime
    expires_at: datetime
    permissions: List[str]


class SessionStatusResponse(BaseModel):
    state: SessionState
    show_warning: bool
    minutes_until_expiry: Optional[int] = None
    message: Optional[str] = None
    expiry_reason: Optional[ExpiryReason] = None
    user: Optional[UserResponse] = None
    role_key: Optional[str] = None
    permissions: List[str] = []
    expires_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None


# Role schemas
class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    key: str = Field(..., min_length=1, max_length=64, pattern=ROLE_KEY_PATTERN)
    description: str = ""
    permission_keys: List[str]
    is_active: bool = True
    is_admin: bool = False
    reason: Optional[str] = None


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    key: Optional[str] = Field(None, min_length=1, max_length=64, pattern=ROLE_KEY_PATTERN)
    description: Optional[str] = None
    permission_keys: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_admin: Optional[bool] = None
    reason: Optional[str] = None


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    key: str
    description: str
    permission_keys: List[str]
    is_system: bool
    is_active: bool
    is_admin: bool
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class RoleDetailResponse(RoleResponse):
    user_count: int


# User schemas
class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    email: str = Field(..., min_length=3, max_length=254)
    full_name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=8, max_length=MAX_PASSWORD_BYTES)
    role_id: str
    status: UserStatus = UserStatus.ACTIVE

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if password_too_long(value):
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=64)
    email: Optional[str] = Field(None, min_length=3, max_length=254)
    full_name: Optional[str] = Field(None, min_length=1, max_length=200)


class UserRoleChange(BaseModel):
    role_id: str
    reason: Optional[str] = None


class UserStatusChange(BaseModel):
    status: UserStatus


class UserWithRoleResponse(UserResponse):
    role_name: Optional[str] = None


# Permission schemas
class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    module: str
    action: str
    display_name: str
    description: str
    module_display_name: str
    risk_level: RiskLevel
    category: PermissionCategory


class PermissionGroupResponse(BaseModel):
    module: str
    module_display_name: str
    permissions: List[PermissionResponse]


# Audit schemas
class FieldChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    field: str
    old_value: Any = None
    new_value: Any = None


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    user_id: str
    username: str
    action: AuditAction
    entity_type: EntityType
    entity_id: str
    entity_name: str
    changes: List[FieldChangeResponse] = []
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
