"""Admin endpoints through the HTTP API, including role enforcement."""

import asyncio

import pytest

from conftest import last_code
from petconsult.storage.models import NewPet

API = "/api/v1"
ADMIN_LOGIN = "09120000000"
ADMIN_PASSWORD = "adminpass1"


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def super_admin(runtime):
    return asyncio.run(
        runtime.admin.create_admin(
            ADMIN_LOGIN, ADMIN_PASSWORD, "Root", "Admin", role="SUPER_ADMIN"
        )
    )


@pytest.fixture
def admin_token(client, super_admin):
    response = client.post(
        f"{API}/admin/login", json={"mobile": ADMIN_LOGIN, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return response.json()["data"]["tokens"]["accessToken"]


@pytest.fixture
def user_session(client, notifier):
    mobile = "09121234567"
    client.post(
        f"{API}/auth/register",
        json={"mobile": mobile, "password": "secret123", "firstName": "Sara", "lastName": "Ahmadi"},
    )
    response = client.post(
        f"{API}/auth/verify-registration",
        json={"mobile": mobile, "code": last_code(notifier, mobile)},
    )
    return response.json()["data"]


class TestAdminAuth:
    def test_admin_login_has_no_refresh_token(self, client, super_admin):
        response = client.post(
            f"{API}/admin/login", json={"mobile": ADMIN_LOGIN, "password": ADMIN_PASSWORD}
        )

        data = response.json()["data"]
        assert data["admin"]["role"] == "SUPER_ADMIN"
        assert data["tokens"]["refreshToken"] is None
        assert data["tokens"]["accessToken"]

    def test_admin_login_bad_password(self, client, super_admin):
        response = client.post(
            f"{API}/admin/login", json={"mobile": ADMIN_LOGIN, "password": "wrongpass9"}
        )
        assert response.status_code == 401

    def test_admin_me(self, client, admin_token):
        response = client.get(f"{API}/admin/me", headers=_bearer(admin_token))

        assert response.status_code == 200
        assert response.json()["data"]["admin"]["email"] == ADMIN_LOGIN

    def test_user_token_cannot_reach_admin_routes(self, client, user_session):
        token = user_session["tokens"]["accessToken"]

        assert client.get(f"{API}/admin/users", headers=_bearer(token)).status_code == 403
        assert client.get(f"{API}/admin/me", headers=_bearer(token)).status_code == 403

    def test_admin_token_cannot_reach_user_routes(self, client, admin_token):
        response = client.get(f"{API}/auth/me", headers=_bearer(admin_token))
        assert response.status_code == 403

    def test_admin_token_cannot_log_out_user_sessions(self, client, admin_token):
        logout = client.post(f"{API}/auth/logout", headers=_bearer(admin_token))
        logout_all = client.post(f"{API}/auth/logout-all", headers=_bearer(admin_token))

        assert logout.status_code == 403
        assert logout_all.status_code == 403

    def test_anonymous_admin_request_unauthorized(self, client):
        assert client.get(f"{API}/admin/users").status_code == 401


class TestUserManagement:
    def test_list_and_get_users(self, client, admin_token, user_session):
        listing = client.get(f"{API}/admin/users?limit=10", headers=_bearer(admin_token))

        assert listing.status_code == 200
        items = listing.json()["data"]["items"]
        assert [item["mobile"] for item in items] == ["09121234567"]
        assert listing.json()["data"]["nextCursor"] is None

        detail = client.get(
            f"{API}/admin/users/{items[0]['id']}", headers=_bearer(admin_token)
        )
        assert detail.status_code == 200
        assert detail.json()["data"]["pets"] == []

    def test_deactivate_blocks_login_and_refresh(self, client, admin_token, user_session):
        user_id = user_session["user"]["id"]

        response = client.patch(
            f"{API}/admin/users/{user_id}/deactivate", headers=_bearer(admin_token)
        )
        assert response.status_code == 200
        assert response.json()["data"]["isActive"] is False

        refresh = client.post(
            f"{API}/auth/refresh",
            json={"refreshToken": user_session["tokens"]["refreshToken"]},
        )
        login = client.post(
            f"{API}/auth/login", json={"mobile": "09121234567", "password": "secret123"}
        )
        assert refresh.status_code == 401
        assert login.status_code == 401

        again = client.patch(
            f"{API}/admin/users/{user_id}/deactivate", headers=_bearer(admin_token)
        )
        assert again.status_code == 400

        reactivated = client.patch(
            f"{API}/admin/users/{user_id}/activate", headers=_bearer(admin_token)
        )
        assert reactivated.status_code == 200

    def test_delete_user_with_pets_conflicts(self, client, admin_token, store):
        owner, _ = store.create_user(
            "09127654321", "hash", "Ali", "Karimi", pet=NewPet(name="Rex", species="dog")
        )

        response = client.delete(f"{API}/admin/users/{owner.id}", headers=_bearer(admin_token))
        assert response.status_code == 409

    def test_delete_user(self, client, admin_token, user_session):
        user_id = user_session["user"]["id"]

        response = client.delete(f"{API}/admin/users/{user_id}", headers=_bearer(admin_token))
        assert response.status_code == 200
        missing = client.get(f"{API}/admin/users/{user_id}", headers=_bearer(admin_token))
        assert missing.status_code == 404


class TestAdminCreation:
    def test_super_admin_creates_admin(self, client, admin_token):
        response = client.post(
            f"{API}/admin/admins",
            json={
                "email": "ops@example.com",
                "password": "opspass12",
                "firstName": "Ops",
                "lastName": "Team",
                "role": "ADMIN",
            },
            headers=_bearer(admin_token),
        )
        assert response.status_code == 201
        assert response.json()["data"]["admin"]["role"] == "ADMIN"

        duplicate = client.post(
            f"{API}/admin/admins",
            json={
                "email": "OPS@example.com",
                "password": "opspass12",
                "firstName": "Ops",
                "lastName": "Team",
            },
            headers=_bearer(admin_token),
        )
        assert duplicate.status_code == 409

    def test_plain_admin_cannot_create_admins(self, client, runtime, super_admin):
        asyncio.run(
            runtime.admin.create_admin(
                "ops@example.com", "opspass12", "Ops", "Team", role="ADMIN"
            )
        )
        login = client.post(
            f"{API}/admin/login", json={"mobile": "ops@example.com", "password": "opspass12"}
        )
        token = login.json()["data"]["tokens"]["accessToken"]

        response = client.post(
            f"{API}/admin/admins",
            json={
                "email": "new@example.com",
                "password": "newpass12",
                "firstName": "New",
                "lastName": "Admin",
            },
            headers=_bearer(token),
        )
        assert response.status_code == 403
