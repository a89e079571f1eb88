"""
End-to-end tests through the HTTP API.

Every request resolves its bearer token to a live session, rebuilds the
session's permissions from current data and only then checks the ability.
"""
import pytest

from rbac_core.api.dependencies import session_registry
from rbac_core.seed import AUDITOR_ROLE_ID, BOOTSTRAP_ADMIN_ID, BUSINESS_USER_ROLE_ID
from tests.conftest import ADMIN_PASSWORD, FakeClock


def login(client, username, password):
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, "admin", ADMIN_PASSWORD)


@pytest.fixture
def auditor(client, admin_headers):
    """An active auditor account created through the API."""
    response = client.post("/api/users", headers=admin_headers, json={
        "username": "audit.person",
        "email": "audit.person@example.com",
        "full_name": "Audit Person",
        "password": "auditor-password",
        "role_id": AUDITOR_ROLE_ID,
    })
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def auditor_headers(client, auditor):
    return login(client, "audit.person", "auditor-password")


def error_code(response):
    return response.json()["detail"]["code"]


class TestAuthEndpoints:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_login_returns_token_and_permissions(self, client):
        response = client.post("/api/auth/login", json={"username": "admin", "password": ADMIN_PASSWORD})

        body = response.json()
        assert response.status_code == 200
        assert body["token"]
        assert body["user"]["id"] == BOOTSTRAP_ADMIN_ID
        assert "password_hash" not in body["user"]
        assert body["permissions"] == ["all.manage"]

    def test_bad_credentials(self, client):
        response = client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})

        assert response.status_code == 401
        assert error_code(response) == "INVALID_CREDENTIALS"

    def test_missing_and_unknown_tokens(self, client):
        assert client.get("/api/roles").status_code == 401

        response = client.get("/api/roles", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401
        assert error_code(response) == "SESSION_EXPIRED"

    def test_session_status(self, client, admin_headers):
        body = client.get("/api/auth/session", headers=admin_headers).json()

        assert body["state"] == "authenticated"
        assert body["show_warning"] is False
        assert body["role_key"] == "super_admin"
        assert body["user"]["username"] == "admin"

    def test_status_polling_does_not_keep_session_alive(self, client, admin_headers):
        """
        INVARIANT: checking session status is not activity; only interaction resets the idle timer.
        """
        manager = session_registry.get(admin_headers["Authorization"].split(" ", 1)[1])
        clock = FakeClock(manager.session.last_activity)
        manager.clock = clock

        clock.advance(minutes=20)
        assert client.get("/api/auth/session", headers=admin_headers).status_code == 200

        clock.advance(minutes=20)
        response = client.get("/api/auth/session", headers=admin_headers)

        assert response.status_code == 401
        assert error_code(response) == "SESSION_EXPIRED"

    def test_interaction_resets_idle_timer(self, client, admin_headers):
        manager = session_registry.get(admin_headers["Authorization"].split(" ", 1)[1])
        clock = FakeClock(manager.session.last_activity)
        manager.clock = clock

        clock.advance(minutes=20)
        assert client.get("/api/roles", headers=admin_headers).status_code == 200
        clock.advance(minutes=20)

        assert client.get("/api/auth/session", headers=admin_headers).status_code == 200

    def test_refresh(self, client, admin_headers):
        response = client.post("/api/auth/refresh", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["state"] == "authenticated"

    def test_logout_invalidates_token(self, client, admin_headers):
        assert client.post("/api/auth/logout", headers=admin_headers).status_code == 204

        response = client.get("/api/auth/session", headers=admin_headers)
        assert response.status_code == 401


class TestRoleEndpoints:
    def test_create_and_fetch_role(self, client, admin_headers):
        response = client.post("/api/roles", headers=admin_headers, json={
            "name": "Helpdesk",
            "key": "helpdesk",
            "permission_keys": ["users.read", "users.update"],
        })
        assert response.status_code == 201
        role_id = response.json()["id"]

        detail = client.get(f"/api/roles/{role_id}", headers=admin_headers).json()
        assert detail["key"] == "helpdesk"
        assert detail["user_count"] == 0
        assert sorted(detail["permission_keys"]) == ["users.read", "users.update"]

    def test_duplicate_key_conflicts(self, client, admin_headers):
        response = client.post("/api/roles", headers=admin_headers, json={
            "name": "Another Auditor", "key": "auditor", "permission_keys": ["users.read"],
        })

        assert response.status_code == 409
        assert error_code(response) == "DUPLICATE_ROLE_KEY"

    def test_invalid_key_format_rejected_by_schema(self, client, admin_headers):
        response = client.post("/api/roles", headers=admin_headers, json={
            "name": "Bad", "key": "Bad Key", "permission_keys": ["users.read"],
        })

        assert response.status_code == 422

    def test_system_role_cannot_be_deleted(self, client, admin_headers):
        response = client.delete(f"/api/roles/{AUDITOR_ROLE_ID}", headers=admin_headers)

        assert response.status_code == 403
        assert error_code(response) == "DELETE_NOT_ALLOWED"

    def test_custom_role_delete_and_duplicate(self, client, admin_headers):
        copy = client.post(f"/api/roles/{AUDITOR_ROLE_ID}/duplicate", headers=admin_headers)
        assert copy.status_code == 201
        assert copy.json()["name"] == "Auditor (Copy)"

        assert client.delete(f"/api/roles/{copy.json()['id']}", headers=admin_headers).status_code == 204
        assert client.get(f"/api/roles/{copy.json()['id']}", headers=admin_headers).status_code == 404

    def test_search_roles(self, client, admin_headers):
        found = client.get("/api/roles", params={"q": "audit"}, headers=admin_headers).json()

        assert [r["key"] for r in found] == ["auditor"]


class TestAuthorization:
    def test_read_only_role_cannot_write(self, client, auditor_headers):
        assert client.get("/api/roles", headers=auditor_headers).status_code == 200

        response = client.post("/api/roles", headers=auditor_headers, json={
            "name": "Sneaky", "key": "sneaky", "permission_keys": ["users.read"],
        })
        assert response.status_code == 403
        assert error_code(response) == "FORBIDDEN"

    def test_role_change_applies_to_next_request(self, client, admin_headers, auditor, auditor_headers):
        """
        INVARIANT: permissions follow the user's current role, not the role at login.
        """
        response = client.put(
            f"/api/users/{auditor['id']}/role",
            headers=admin_headers,
            json={"role_id": BUSINESS_USER_ROLE_ID, "reason": "moved team"},
        )
        assert response.status_code == 200

        assert client.get("/api/roles", headers=auditor_headers).status_code == 403

    def test_deactivated_user_loses_session(self, client, admin_headers, auditor, auditor_headers):
        response = client.put(
            f"/api/users/{auditor['id']}/status", headers=admin_headers, json={"status": "inactive"},
        )
        assert response.status_code == 200

        first = client.get("/api/roles", headers=auditor_headers)
        assert first.status_code == 401
        assert error_code(first) == "USER_INACTIVE"

        second = client.get("/api/roles", headers=auditor_headers)
        assert error_code(second) == "SESSION_EXPIRED"


class TestUserEndpoints:
    def test_list_users_with_role_names(self, client, admin_headers, auditor):
        users = client.get("/api/users", headers=admin_headers).json()

        by_name = {u["username"]: u["role_name"] for u in users}
        assert by_name == {"admin": "Super Admin", "audit.person": "Auditor"}

    def test_cannot_delete_self(self, client, admin_headers):
        response = client.delete(f"/api/users/{BOOTSTRAP_ADMIN_ID}", headers=admin_headers)

        assert response.status_code == 403
        assert error_code(response) == "MODIFICATION_NOT_ALLOWED"

    def test_duplicate_username(self, client, admin_headers, auditor):
        response = client.post("/api/users", headers=admin_headers, json={
            "username": "audit.person",
            "email": "someone.else@example.com",
            "full_name": "Someone Else",
            "password": "long-enough",
            "role_id": AUDITOR_ROLE_ID,
        })

        assert response.status_code == 409
        assert error_code(response) == "DUPLICATE_USERNAME"

    def test_overlong_password_rejected(self, client, admin_headers):
        response = client.post("/api/users", headers=admin_headers, json={
            "username": "long.pw",
            "email": "long.pw@example.com",
            "full_name": "Long Password",
            "password": "é" * 40,
            "role_id": AUDITOR_ROLE_ID,
        })

        assert response.status_code == 422
        users = client.get("/api/users", headers=admin_headers).json()
        assert "long.pw" not in {u["username"] for u in users}

    def test_update_and_delete_user(self, client, admin_headers, auditor):
        updated = client.put(
            f"/api/users/{auditor['id']}", headers=admin_headers, json={"full_name": "Audit P."},
        )
        assert updated.json()["full_name"] == "Audit P."

        assert client.delete(f"/api/users/{auditor['id']}", headers=admin_headers).status_code == 204
        assert client.get(f"/api/users/{auditor['id']}", headers=admin_headers).status_code == 404


class TestPermissionAndAuditEndpoints:
    def test_permissions_grouped_by_module(self, client, admin_headers):
        flat = client.get("/api/permissions", headers=admin_headers).json()
        grouped = client.get("/api/permissions/grouped", headers=admin_headers).json()

        assert len(flat) == sum(len(g["permissions"]) for g in grouped)
        users_group = next(g for g in grouped if g["module"] == "users")
        assert users_group["module_display_name"] == "Users"

    def test_audit_log_filters(self, client, admin_headers, auditor):
        entries = client.get("/api/audit-logs", headers=admin_headers).json()

        assert entries[0]["action"] == "create"
        assert entries[0]["entity_name"] == "audit.person"
        assert entries[-1]["action"] == "login"

        logins = client.get("/api/audit-logs", params={"action": "login"}, headers=admin_headers).json()
        assert {e["username"] for e in logins} == {"admin"}
        assert logins[0]["ip_address"] == "testclient"

    def test_auditor_can_read_audit_logs(self, client, auditor_headers):
        assert client.get("/api/audit-logs", headers=auditor_headers).status_code == 200

    def test_export_csv_and_json(self, client, admin_headers):
        csv_response = client.get("/api/audit-logs/export", params={"format": "csv"}, headers=admin_headers)
        assert csv_response.status_code == 200
        assert csv_response.headers["content-type"].startswith("text/csv")
        assert csv_response.text.splitlines()[0] == "Timestamp,Username,Action,Entity Type,Entity Name,Reason"

        json_response = client.get("/api/audit-logs/export", params={"format": "json"}, headers=admin_headers)
        assert json_response.json()[0]["action"] == "login"

    def test_export_rejects_unknown_format(self, client, admin_headers):
        response = client.get("/api/audit-logs/export", params={"format": "xml"}, headers=admin_headers)

        assert response.status_code == 422
