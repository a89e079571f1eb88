"""
Tests for the role, user and auth services.

Mutations run guard -> write -> audit: a denied guard leaves both the stores
and the audit trail untouched.
"""
import pytest

from rbac_core.models.domain import Actor
from rbac_core.models.enums import AuditAction, EntityType, ExpiryReason, SessionState, UserStatus
from rbac_core.models.result import ErrorCode, Result
from rbac_core.repositories.memory import InMemoryAuditStore
from rbac_core.seed import (
    AUDITOR_ROLE_ID,
    BOOTSTRAP_ADMIN_ID,
    BUSINESS_USER_ROLE_ID,
    SECURITY_ADMIN_ROLE_ID,
    SUPER_ADMIN_ROLE_ID,
)
from rbac_core.services.audit_recorder import AuditRecorder
from rbac_core.services.auth_service import AuthService
from rbac_core.services.passwords import verify_password
from rbac_core.services.role_service import RoleService
from rbac_core.services.user_service import UserService
from tests.conftest import ADMIN_PASSWORD, USER_PASSWORD, make_user


class FailingAuditStore(InMemoryAuditStore):
    def append(self, entry):
        return Result.fail(ErrorCode.STORAGE_ERROR, "Storage operation failed")


@pytest.fixture
def auth(users, roles, audit, settings, storage, clock):
    return AuthService(users, roles, audit, settings=settings, storage=storage, clock=clock)


class TestRoleService:
    def test_create_role_writes_and_audits(self, role_service, roles, audit_store, admin_actor):
        result = role_service.create_role(
            admin_actor, name="Helpdesk", key="helpdesk",
            permission_keys=["users.read", "users.update"], reason="new team",
        )

        assert result.success
        role = result.data
        assert role.id.startswith("role_")
        assert roles.get(role.id).data == role
        assert role.created_by == admin_actor.user_id

        (entry,) = audit_store.list().data
        assert entry.action == AuditAction.CREATE
        assert entry.entity_type == EntityType.ROLE
        assert entry.reason == "new team"
        assert entry.changes[0].new_value == ["users.read", "users.update"]

    def test_denied_create_leaves_no_trace(self, role_service, roles, audit_store, admin_actor):
        """
        INVARIANT: a denied guard means no write and no audit entry.
        """
        before = len(roles.list().data)

        result = role_service.create_role(admin_actor, name="Empty", key="empty", permission_keys=[])

        assert result.error_code == ErrorCode.NO_PERMISSIONS.value
        assert len(roles.list().data) == before
        assert audit_store.list().data == []

    def test_update_role_audits_field_diff(self, role_service, audit_store, admin_actor):
        result = role_service.update_role(
            admin_actor, BUSINESS_USER_ROLE_ID,
            name="Business Users", permission_keys=["reports.read"],
        )

        assert result.success
        (entry,) = audit_store.list().data
        changed = {c.field: (c.old_value, c.new_value) for c in entry.changes}
        assert changed == {
            "name": ("Business User", "Business Users"),
            "permission_keys": (["reports.read", "security_groups.read"], ["reports.read"]),
        }

    def test_update_with_no_changes_skips_audit(self, role_service, audit_store, admin_actor):
        assert role_service.update_role(admin_actor, BUSINESS_USER_ROLE_ID, name="Business User").success
        assert audit_store.list().data == []

    def test_system_role_delete_denied(self, role_service, roles, admin_actor):
        result = role_service.delete_role(admin_actor, AUDITOR_ROLE_ID)

        assert result.error_code == ErrorCode.DELETE_NOT_ALLOWED.value
        assert roles.get(AUDITOR_ROLE_ID).data is not None

    def test_delete_custom_role(self, role_service, roles, audit_store, admin_actor):
        result = role_service.delete_role(admin_actor, BUSINESS_USER_ROLE_ID, reason="retired")

        assert result.success
        assert roles.get(BUSINESS_USER_ROLE_ID).data is None
        (entry,) = audit_store.list().data
        assert entry.action == AuditAction.DELETE
        assert entry.entity_name == "Business User"

    def test_duplicate_role(self, role_service, admin_actor):
        result = role_service.duplicate_role(admin_actor, SUPER_ADMIN_ROLE_ID)

        copy = result.data
        assert copy.name == "Super Admin (Copy)"
        assert copy.key.startswith("super_admin_copy_")
        assert copy.permission_keys == ("all.manage",)
        assert copy.is_system is False
        assert copy.is_admin is False

    def test_queries(self, role_service, users):
        users.add(make_user("user_biz", "biz.user", BUSINESS_USER_ROLE_ID))

        assert {r.key for r in role_service.search_roles("ADMIN").data} == {"super_admin", "security_admin"}
        assert [r.id for r in role_service.custom_roles().data] == [BUSINESS_USER_ROLE_ID]
        assert len(role_service.system_roles().data) == 3
        assert role_service.count_users(BUSINESS_USER_ROLE_ID).data == 1
        assert role_service.get_role("role_missing").error_code == ErrorCode.ROLE_NOT_FOUND.value

    def test_audit_failure_does_not_undo_write(self, roles, users, guard, clock, admin_actor):
        """
        INVARIANT: recording is fire-and-forget.
        """
        service = RoleService(roles, users, guard, AuditRecorder(FailingAuditStore(), clock=clock), clock=clock)

        result = service.create_role(admin_actor, name="Helpdesk", key="helpdesk", permission_keys=["users.read"])

        assert result.success
        assert roles.get_by_key("helpdesk").data is not None


class TestUserService:
    def test_create_user_hashes_password(self, user_service, users, audit_store, admin_actor):
        result = user_service.create_user(
            admin_actor, username="new.person", email="new.person@example.com",
            full_name="New Person", password="s3cret-pass", role_id=AUDITOR_ROLE_ID,
        )

        user = result.data
        assert users.get(user.id).data == user
        assert user.password_hash != "s3cret-pass"
        assert verify_password("s3cret-pass", user.password_hash)

        (entry,) = audit_store.list().data
        assert entry.action == AuditAction.CREATE
        assert entry.changes[0].new_value == "Auditor"

    def test_create_user_into_inactive_role_denied(self, user_service, role_service, admin_actor):
        role_service.update_role(admin_actor, AUDITOR_ROLE_ID, is_active=False)

        result = user_service.create_user(
            admin_actor, username="new.person", email="new.person@example.com",
            full_name="New Person", password="s3cret-pass", role_id=AUDITOR_ROLE_ID,
        )

        assert result.error_code == ErrorCode.ROLE_INACTIVE.value

    def test_create_user_with_overlong_password_fails(self, user_service, users, audit_store, admin_actor):
        """
        INVARIANT: a password bcrypt cannot hash is a typed failure with no write and no audit.
        """
        result = user_service.create_user(
            admin_actor, username="long.pw", email="long.pw@example.com",
            full_name="Long Password", password="x" * 100, role_id=AUDITOR_ROLE_ID,
        )

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_PASSWORD.value
        assert users.get_by_username("long.pw").data is None
        assert audit_store.list().data == []

    def test_password_limit_counts_bytes(self, user_service, admin_actor):
        # 40 characters, 80 bytes in UTF-8
        result = user_service.create_user(
            admin_actor, username="long.pw", email="long.pw@example.com",
            full_name="Long Password", password="é" * 40, role_id=AUDITOR_ROLE_ID,
        )

        assert result.error_code == ErrorCode.INVALID_PASSWORD.value

    def test_change_role_records_names(self, user_service, users, audit_store, admin_actor):
        users.add(make_user("user_biz", "biz.user", BUSINESS_USER_ROLE_ID))

        result = user_service.change_role(admin_actor, "user_biz", AUDITOR_ROLE_ID, reason="promotion")

        assert result.data.role_id == AUDITOR_ROLE_ID
        (entry,) = audit_store.list().data
        assert entry.action == AuditAction.ROLE_CHANGE
        assert (entry.changes[0].old_value, entry.changes[0].new_value) == ("Business User", "Auditor")
        assert entry.reason == "promotion"

    def test_self_edit_denied(self, user_service, admin_actor):
        result = user_service.update_user(admin_actor, BOOTSTRAP_ADMIN_ID, full_name="Me")

        assert result.error_code == ErrorCode.MODIFICATION_NOT_ALLOWED.value

    def test_update_user_audits_changes(self, user_service, users, audit_store, admin_actor):
        users.add(make_user("user_biz", "biz.user", BUSINESS_USER_ROLE_ID))

        result = user_service.update_user(admin_actor, "user_biz", email="biz@corp.example")

        assert result.data.email == "biz@corp.example"
        (entry,) = audit_store.list().data
        assert [c.field for c in entry.changes] == ["email"]

    def test_set_status(self, user_service, users, audit_store, admin_actor):
        users.add(make_user("user_biz", "biz.user", BUSINESS_USER_ROLE_ID))

        result = user_service.set_status(admin_actor, "user_biz", UserStatus.SUSPENDED)

        assert result.data.status == UserStatus.SUSPENDED
        (entry,) = audit_store.list().data
        assert (entry.changes[0].field, entry.changes[0].new_value) == ("status", "suspended")

        # Unchanged status is a no-op
        assert user_service.set_status(admin_actor, "user_biz", UserStatus.SUSPENDED).success
        assert len(audit_store.list().data) == 1

    def test_last_admin_cannot_be_deleted(self, user_service, users, audit_store):
        other = Actor("user_other", "other")

        result = user_service.delete_user(other, BOOTSTRAP_ADMIN_ID)

        assert result.error_code == ErrorCode.DELETE_NOT_ALLOWED.value
        assert users.get(BOOTSTRAP_ADMIN_ID).data is not None
        assert audit_store.list().data == []

    def test_delete_user(self, user_service, users, audit_store, admin_actor):
        users.add(make_user("user_biz", "biz.user", BUSINESS_USER_ROLE_ID))

        assert user_service.delete_user(admin_actor, "user_biz").success
        assert users.get("user_biz").data is None
        assert audit_store.list().data[0].action == AuditAction.DELETE

    def test_users_with_roles(self, user_service):
        (pair,) = user_service.list_users_with_roles().data

        user, role = pair
        assert user.id == BOOTSTRAP_ADMIN_ID
        assert role.id == SUPER_ADMIN_ROLE_ID


class TestAuthService:
    def test_login_builds_ability_and_audits(self, auth, audit_store, users):
        result = auth.login("admin", ADMIN_PASSWORD, ip_address="127.0.0.1", user_agent="pytest")

        assert result.success
        assert auth.session.state == SessionState.AUTHENTICATED
        assert auth.role.id == SUPER_ADMIN_ROLE_ID
        assert auth.ability.can("delete", "users")
        assert users.get(BOOTSTRAP_ADMIN_ID).data.last_login == result.data.login_time

        (entry,) = audit_store.list().data
        assert entry.action == AuditAction.LOGIN
        assert entry.ip_address == "127.0.0.1"

    def test_wrong_password_and_unknown_user_look_the_same(self, auth, audit_store):
        wrong = auth.login("admin", "nope")
        unknown = auth.login("ghost", "nope")

        assert wrong.error == unknown.error
        assert wrong.error_code == ErrorCode.INVALID_CREDENTIALS.value
        assert wrong.error.message == "Invalid username or password"
        assert audit_store.list().data == []

    def test_inactive_account_refused(self, auth, users):
        users.add(make_user("user_sus", "sus.user", AUDITOR_ROLE_ID, status=UserStatus.SUSPENDED))

        result = auth.login("sus.user", USER_PASSWORD)

        assert result.error_code == ErrorCode.USER_INACTIVE.value
        assert result.error.message == "Account is suspended. Please contact your administrator."

    def test_inactive_role_refused(self, auth, users, roles):
        users.add(make_user("user_aud", "aud.user", AUDITOR_ROLE_ID))
        roles.update(roles.get(AUDITOR_ROLE_ID).data.with_changes(is_active=False))

        result = auth.login("aud.user", USER_PASSWORD)

        assert result.error_code == ErrorCode.ROLE_INACTIVE.value
        assert not auth.session.is_authenticated

    def test_missing_role_refused(self, auth, users):
        users.add(make_user("user_orphan", "orphan.user", "role_gone"))

        assert auth.login("orphan.user", USER_PASSWORD).error_code == ErrorCode.ROLE_NOT_FOUND.value

    def test_logout_empties_ability(self, auth, audit_store):
        auth.login("admin", ADMIN_PASSWORD)

        auth.logout()

        assert auth.ability.cannot("read", "users")
        assert auth.role is None
        assert [e.action for e in audit_store.list().data] == [AuditAction.LOGIN, AuditAction.LOGOUT]

    def test_expiry_empties_ability(self, auth, clock):
        """
        INVARIANT: once the session expires, every ability check is false.
        """
        auth.login("admin", ADMIN_PASSWORD)
        clock.advance(minutes=31)

        assert auth.ability.cannot("read", "users")
        assert auth.session.expiry_reason == ExpiryReason.IDLE
        assert auth.refresh().error_code == ErrorCode.SESSION_EXPIRED.value

    def test_relogin_replaces_session(self, auth, users, audit_store):
        users.add(make_user("user_aud", "aud.user", AUDITOR_ROLE_ID))
        auth.login("admin", ADMIN_PASSWORD)

        result = auth.login("aud.user", USER_PASSWORD)

        assert result.success
        assert auth.current_user.id == "user_aud"
        assert auth.ability.cannot("delete", "users")
        assert [e.action for e in audit_store.list().data] == [
            AuditAction.LOGIN,
            AuditAction.LOGOUT,
            AuditAction.LOGIN,
        ]

    def test_role_change_applies_on_reload(self, auth, users, user_service, admin_actor):
        users.add(make_user("user_sec", "sec.user", SECURITY_ADMIN_ROLE_ID))
        auth.login("sec.user", USER_PASSWORD)
        assert auth.ability.can("create", "users")

        user_service.change_role(admin_actor, "user_sec", AUDITOR_ROLE_ID)
        assert auth.reload_permissions().success

        assert auth.ability.cannot("create", "users")
        assert auth.ability.can("read", "audit_logs")
        assert auth.current_user.role_id == AUDITOR_ROLE_ID

    def test_deactivated_user_is_logged_out_on_reload(self, auth, users, user_service, admin_actor):
        users.add(make_user("user_sec", "sec.user", SECURITY_ADMIN_ROLE_ID))
        auth.login("sec.user", USER_PASSWORD)

        user_service.set_status(admin_actor, "user_sec", UserStatus.INACTIVE)
        result = auth.reload_permissions()

        assert result.error_code == ErrorCode.USER_INACTIVE.value
        assert auth.session.state == SessionState.ANONYMOUS
        assert auth.ability.cannot("read", "users")

    def test_restore_rebuilds_permissions(self, users, roles, audit, settings, storage, clock):
        first = AuthService(users, roles, audit, settings=settings, storage=storage, clock=clock)
        first.login("admin", ADMIN_PASSWORD)

        second = AuthService(users, roles, audit, settings=settings, storage=storage, clock=clock)

        assert second.restore() is True
        assert second.ability.can("manage", "roles")
        assert second.current_user.id == BOOTSTRAP_ADMIN_ID
