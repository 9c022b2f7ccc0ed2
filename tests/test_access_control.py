"""Access-control dependencies exercised on a minimal app."""

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from petconsult.api.deps import (
    Principal,
    get_principal,
    require_admin,
    require_roles,
    require_super_admin,
    require_user,
)
from petconsult.api.error_handling import register_exception_handlers
from petconsult.service.tokens import PRINCIPAL_ADMIN, TokenIssuer


@pytest.fixture
def guarded(runtime, clock):
    runtime.issuer = TokenIssuer(runtime.settings, clock=clock)
    app = FastAPI()
    app.state.runtime = runtime
    register_exception_handlers(app)

    @app.get("/any")
    async def any_principal(principal: Principal = Depends(get_principal)):
        return {"sub": principal.subject_id, "type": principal.principal_type}

    @app.get("/user")
    async def user_only(principal: Principal = Depends(require_user)):
        return {"sub": principal.subject_id}

    @app.get("/vet")
    async def vet_only(principal: Principal = Depends(require_roles("VETERINARIAN"))):
        return {"sub": principal.subject_id}

    @app.get("/admin")
    async def admin_only(principal: Principal = Depends(require_admin)):
        return {"sub": principal.subject_id}

    @app.get("/super")
    async def super_only(principal: Principal = Depends(require_super_admin)):
        return {"sub": principal.subject_id}

    return TestClient(app), runtime.issuer


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestGetPrincipal:
    def test_missing_header(self, guarded):
        client, _ = guarded
        response = client.get("/any")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_bearer_scheme(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "USER").access_token

        assert client.get("/any", headers={"Authorization": f"Basic {token}"}).status_code == 401
        assert client.get("/any", headers={"Authorization": "Bearer"}).status_code == 401

    def test_valid_token_resolves_principal(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "USER").access_token

        response = client.get("/any", headers=_auth(token))
        assert response.json() == {"sub": "u1", "type": "user"}

    def test_expired_token(self, guarded, clock):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "USER").access_token
        clock.advance(hours=1)

        assert client.get("/any", headers=_auth(token)).status_code == 401

    def test_refresh_token_rejected(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "USER").refresh_token

        assert client.get("/any", headers=_auth(token)).status_code == 401


class TestRoleChecks:
    def test_role_mismatch_is_forbidden(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "USER").access_token

        response = client.get("/vet", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert client.get("/user", headers=_auth(token)).status_code == 200

    def test_veterinarian_role_allowed(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("v1", "09121234567", "VETERINARIAN").access_token

        assert client.get("/vet", headers=_auth(token)).status_code == 200

    def test_user_with_admin_role_is_not_an_admin_principal(self, guarded):
        client, issuer = guarded
        token = issuer.issue_token_pair("u1", "09121234567", "ADMIN").access_token

        assert client.get("/admin", headers=_auth(token)).status_code == 403

    def test_admin_hierarchy(self, guarded):
        client, issuer = guarded
        admin = issuer.issue_access_token("a1", None, "ADMIN", principal_type=PRINCIPAL_ADMIN)
        root = issuer.issue_access_token(
            "a2", None, "SUPER_ADMIN", principal_type=PRINCIPAL_ADMIN
        )

        assert client.get("/admin", headers=_auth(admin.token)).status_code == 200
        assert client.get("/super", headers=_auth(admin.token)).status_code == 403
        assert client.get("/super", headers=_auth(root.token)).status_code == 200
        assert client.get("/user", headers=_auth(root.token)).status_code == 403
