"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rbac_core.config import Settings, get_settings
from rbac_core.database import Base, get_db
from rbac_core.models.domain import Actor, User
from rbac_core.models.enums import UserStatus
# Import models to register them with SQLAlchemy Base
from rbac_core.models.tables import AuditLogRow, PermissionRow, RoleRow, UserRow
from rbac_core.repositories.memory import (
    InMemoryAuditStore,
    InMemoryKeyValueStore,
    InMemoryPermissionStore,
    InMemoryRoleStore,
    InMemoryUserStore,
)
from rbac_core.repositories.sql import SqlPermissionStore, SqlRoleStore, SqlUserStore
from rbac_core.seed import BOOTSTRAP_ADMIN_ID, SUPER_ADMIN_ROLE_ID, seed_defaults
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.passwords import hash_password
from rbac_core.services.role_guard import RoleGuard
from rbac_core.services.role_service import RoleService
from rbac_core.services.user_service import UserService

START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
ADMIN_PASSWORD = "admin-password"
USER_PASSWORD = "user-password"


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Default session timings with cheap bcrypt rounds."""
    return Settings(
        database_url="sqlite:///:memory:",
        password_hash_rounds=4,
        seed_admin_username="admin",
        seed_admin_email="admin@example.com",
        seed_admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def storage():
    return InMemoryKeyValueStore()


@pytest.fixture
def stores(settings):
    """In-memory stores seeded with the default catalogue, roles and admin."""
    users = InMemoryUserStore()
    roles = InMemoryRoleStore()
    permissions = InMemoryPermissionStore()
    seed_defaults(users, roles, permissions, settings=settings, now=START)
    return users, roles, permissions


@pytest.fixture
def users(stores):
    return stores[0]


@pytest.fixture
def roles(stores):
    return stores[1]


@pytest.fixture
def permissions(stores):
    return stores[2]


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store, clock):
    return AuditRecorder(audit_store, clock=clock)


@pytest.fixture
def guard(users, roles, permissions):
    return RoleGuard(users, roles, permissions)


@pytest.fixture
def role_service(roles, users, guard, audit, clock):
    return RoleService(roles, users, guard, audit, clock=clock)


@pytest.fixture
def user_service(users, roles, guard, audit, settings, clock):
    return UserService(users, roles, guard, audit, settings=settings, clock=clock)


@pytest.fixture
def admin(users):
    return users.get(BOOTSTRAP_ADMIN_ID).data


@pytest.fixture
def admin_actor(admin):
    return Actor(admin.id, admin.username)


def make_user(user_id, username, role_id, status=UserStatus.ACTIVE, password=USER_PASSWORD, rounds=4):
    return User(
        id=user_id,
        username=username,
        email=f"{username}@example.com",
        full_name=username.replace(".", " ").title(),
        role_id=role_id,
        status=status,
        created_at=START,
        password_hash=hash_password(password, rounds),
    )


@pytest.fixture
def second_admin(users):
    """Another active super admin, so the bootstrap admin is no longer the last."""
    user = make_user("user_second_admin", "second.admin", SUPER_ADMIN_ROLE_ID)
    users.add(user)
    return user


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # In-memory SQLite for fast tests
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def client(settings):
    """API client over a seeded in-memory database shared across connections."""
    from rbac_core.api.dependencies import session_registry
    from rbac_core.main import app

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSessionLocal()
    seed_defaults(SqlUserStore(db), SqlRoleStore(db), SqlPermissionStore(db), settings=settings)
    db.close()

    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    session_registry.clear()

    yield TestClient(app)

    app.dependency_overrides.clear()
    session_registry.clear()
