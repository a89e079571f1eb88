"""SQLAlchemy tables backing the SQL repositories."""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Table,
)
from sqlalchemy.orm import relationship

from rbac_core.database import Base
from rbac_core.models.enums import (
    AuditAction,
    EntityType,
    PermissionCategory,
    RiskLevel,
    UserStatus,
)

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_key", String, ForeignKey("permissions.key"), primary_key=True),
)


class PermissionRow(Base):
    """Read-only permission catalogue."""
    __tablename__ = "permissions"

    id = Column(String, primary_key=True)
    key = Column(String, nullable=False, unique=True, index=True)
    module = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    display_name = Column(String, nullable=False, default="")
    module_display_name = Column(String, nullable=False, default="")
    description = Column(String, nullable=False, default="")
    risk_level = Column(SQLEnum(RiskLevel), nullable=False, default=RiskLevel.LOW)
    category = Column(SQLEnum(PermissionCategory), nullable=False, default=PermissionCategory.MODULE)


class RoleRow(Base):
    """
    Invariants enforced by the guard, not the table:
    - permission set never empty
    - system roles never deleted
    """
    __tablename__ = "roles"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    key = Column(String, nullable=False, unique=True, index=True)
    description = Column(String, nullable=False, default="")
    is_system = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_admin = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    updated_by = Column(String, nullable=True)

    permissions = relationship(
        "PermissionRow",
        secondary=role_permissions,
        order_by="PermissionRow.key",
        lazy="selectin",
    )
    users = relationship("UserRow", back_populates="role")


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=False)
    role_id = Column(String, ForeignKey("roles.id"), nullable=False, index=True)
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.ACTIVE)
    password_hash = Column(String, nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    role = relationship("RoleRow", back_populates="users")


class AuditLogRow(Base):
    """
    Immutable audit entry.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "audit_log_entries"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    username = Column(String, nullable=False)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    entity_type = Column(SQLEnum(EntityType), nullable=False, index=True)
    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=False)
    changes_json = Column(JSON, nullable=True)
    reason = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
