"""End-to-end tests of the HTTP surface.

Covers:
- login, renew, logout and the pairing check
- self service under /v1/me
- password reset
- user, role and right administration
- API tokens
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.service.runtime import get_runtime

PASSWORD = "Password123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, email, password=PASSWORD):
    response = client.post("/v1/auth/token", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_tokens(client):
    get_runtime().users.create_user(
        "root@example.com", password=PASSWORD, roles=["ADMIN"], send_welcome=False
    )
    return _login(client, "root@example.com")


@pytest.fixture
def user_tokens(client):
    get_runtime().users.create_user("alice@example.com", password=PASSWORD, send_welcome=False)
    return _login(client, "alice@example.com")


class TestAuthEndpoints:
    def test_login(self, client, user_tokens):
        assert user_tokens["access_token"]
        assert user_tokens["refresh_token"]
        assert user_tokens["token_type"] == "bearer"
        assert client.cookies.get("refresh_token") == user_tokens["refresh_token"]

    def test_login_failure_envelope(self, client, user_tokens):
        response = client.post(
            "/v1/auth/token", json={"email": "alice@example.com", "password": "nope"}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "Bad credentials"

    def test_login_validation_error(self, client):
        response = client.post("/v1/auth/token", json={"email": "alice@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_renew_with_body(self, client, user_tokens):
        response = client.post(
            "/v1/auth/renew", json={"refresh_token": user_tokens["refresh_token"]}
        )
        assert response.status_code == 200
        access = response.json()["data"]["access_token"]
        assert client.get("/v1/me", headers=_bearer(access)).status_code == 200
        # the previous access token was superseded
        assert client.get("/v1/me", headers=_bearer(user_tokens["access_token"])).status_code == 401

    def test_renew_with_cookie(self, client, user_tokens):
        response = client.post("/v1/auth/renew")
        assert response.status_code == 200
        assert response.json()["data"]["refresh_token"] is None

    def test_renew_without_token(self, client):
        response = client.post("/v1/auth/renew")
        assert response.status_code == 401

    def test_validate_pair(self, client, user_tokens):
        response = client.post(
            "/v1/auth/validate",
            json={
                "refresh_token": user_tokens["refresh_token"],
                "access_token": user_tokens["access_token"],
            },
        )
        assert response.json()["data"] == {"valid": True}

    def test_logout(self, client, user_tokens):
        response = client.post("/v1/auth/logout", headers=_bearer(user_tokens["access_token"]))
        assert response.status_code == 204
        assert client.get("/v1/me", headers=_bearer(user_tokens["access_token"])).status_code == 401
        assert client.post(
            "/v1/auth/renew", json={"refresh_token": user_tokens["refresh_token"]}
        ).status_code == 401

    def test_responses_carry_request_id(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.json()["checks"]["database"]["type"] == "memory"


class TestSelfService:
    def test_me(self, client, user_tokens):
        response = client.get("/v1/me", headers=_bearer(user_tokens["access_token"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "alice@example.com"
        assert data["roles"] == ["USER"]
        assert "password_hash" not in data

    def test_me_requires_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_locale_change_ends_sessions(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        response = client.patch("/v1/me", json={"locale": "en"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["locale"] == "en"
        assert client.get("/v1/me", headers=headers).status_code == 401

    def test_name_change_keeps_sessions(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        assert client.patch("/v1/me", json={"first_name": "Alice"}, headers=headers).status_code == 200
        assert client.get("/v1/me", headers=headers).status_code == 200

    def test_email_is_not_self_patchable(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        response = client.patch("/v1/me", json={"email": "alice@new.example.com"}, headers=headers)
        assert response.json()["data"]["email"] == "alice@example.com"

    def test_email_change_waits_for_verification(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        response = client.put("/v1/me/email", json={"email": "alice@new.example.com"}, headers=headers)
        assert response.status_code == 202
        assert response.json()["data"] == {"status": "sent"}

        me = client.get("/v1/me", headers=headers).json()["data"]
        assert me["email"] == "alice@example.com"
        assert me["pending_email"] == "alice@new.example.com"

        token = get_runtime().raw_store.get_user_by_email("alice@example.com").email_verify_token
        verified = client.post("/v1/verify-email", json={"token": token})

        assert verified.status_code == 200
        assert verified.json()["data"]["email"] == "alice@new.example.com"
        assert client.get("/v1/me", headers=headers).status_code == 401
        _login(client, "alice@new.example.com")

    def test_invalid_verification_token(self, client):
        response = client.post("/v1/verify-email", json={"token": "bogus"})
        assert response.status_code == 401

    def test_change_password(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        response = client.put(
            "/v1/me/password",
            json={"password": "Another123!", "verification": "Another123!"},
            headers=headers,
        )
        assert response.status_code == 204
        assert client.get("/v1/me", headers=headers).status_code == 401
        _login(client, "alice@example.com", "Another123!")

    def test_list_and_delete_sessions(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        sessions = client.get("/v1/me/token", headers=headers).json()["data"]
        assert len(sessions) == 1
        assert sessions[0]["type"] == "REFRESH"

        response = client.delete(f"/v1/me/token/{sessions[0]['id']}", headers=headers)
        assert response.status_code == 204
        assert client.get("/v1/me", headers=headers).status_code == 401

    def test_terminate(self, client, user_tokens):
        headers = _bearer(user_tokens["access_token"])
        assert client.post("/v1/me/terminate", headers=headers).status_code == 204
        assert client.get("/v1/me", headers=headers).status_code == 401


class TestPasswordResetEndpoints:
    def test_unknown_email_answers_no_content(self, client):
        response = client.post("/v1/reset-credentials", json={"email": "nobody@example.com"})
        assert response.status_code == 204

    def test_reset_and_set_password(self, client, user_tokens):
        assert client.post(
            "/v1/reset-credentials", json={"email": "alice@example.com"}
        ).status_code == 204
        token = get_runtime().raw_store.get_user_by_email("alice@example.com").password_reset_token
        assert token

        response = client.post("/v1/set-password", json={"token": token, "password": "Another123!"})

        assert response.status_code == 204
        _login(client, "alice@example.com", "Another123!")

    def test_invalid_reset_token(self, client):
        response = client.post("/v1/set-password", json={"token": "bogus", "password": "Another123!"})
        assert response.status_code == 401

    def test_weak_password_rejected(self, client):
        response = client.post("/v1/set-password", json={"token": "bogus", "password": "short"})
        assert response.status_code == 400


class TestUserAdministration:
    def test_requires_right(self, client, user_tokens):
        response = client.get("/v1/users", headers=_bearer(user_tokens["access_token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_crud(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        response = client.post(
            "/v1/users",
            json={"email": "Bob@Example.com", "first_name": "Bob", "password": "Password456!"},
            headers=headers,
        )
        assert response.status_code == 201
        bob = response.json()["data"]
        assert bob["email"] == "bob@example.com"

        assert client.post(
            "/v1/users", json={"email": "bob@example.com"}, headers=headers
        ).status_code == 409

        listed = client.get("/v1/users", headers=headers).json()["data"]
        assert {u["email"] for u in listed} == {"root@example.com", "bob@example.com"}

        patched = client.patch(f"/v1/users/{bob['id']}", json={"enabled": False}, headers=headers)
        assert patched.json()["data"]["enabled"] is False

        assert client.delete(f"/v1/users/{bob['id']}", headers=headers).status_code == 204
        assert client.get(f"/v1/users/{bob['id']}", headers=headers).status_code == 404

    def test_unknown_patch_field(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        me = client.get("/v1/me", headers=headers).json()["data"]
        response = client.patch(f"/v1/users/{me['id']}", json={"nonce": "x"}, headers=headers)
        assert response.status_code == 400

    def test_last_admin_cannot_demote_self(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        me = client.get("/v1/me", headers=headers).json()["data"]
        response = client.patch(f"/v1/users/{me['id']}", json={"roles": ["USER"]}, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "At least one administrator must remain"

    def test_terminate_user_sessions(self, client, admin_tokens, user_tokens):
        headers = _bearer(admin_tokens["access_token"])
        alice = get_runtime().raw_store.get_user_by_email("alice@example.com")
        assert client.post(f"/v1/users/{alice.id}/terminate", headers=headers).status_code == 204
        assert client.get("/v1/me", headers=_bearer(user_tokens["access_token"])).status_code == 401


class TestRoleAndRightAdministration:
    def test_role_lifecycle(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        created = client.post(
            "/v1/roles", json={"name": "AUDITOR", "rights": ["USER_READ"]}, headers=headers
        )
        assert created.status_code == 201

        updated = client.put(
            "/v1/roles/AUDITOR",
            json={"name": "AUDITOR", "description": "Auditors", "rights": ["USER_READ", "ROLE_READ"]},
            headers=headers,
        )
        assert updated.json()["data"]["rights"] == ["ROLE_READ", "USER_READ"]

        mismatch = client.put("/v1/roles/AUDITOR", json={"name": "OTHER"}, headers=headers)
        assert mismatch.status_code == 400

        assert client.delete("/v1/roles/AUDITOR", headers=headers).status_code == 204

    def test_protected_role(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        response = client.patch("/v1/roles/ADMIN", json={"rights": []}, headers=headers)
        assert response.status_code == 403

    def test_right_lifecycle(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        assert client.post(
            "/v1/rights", json={"authority": "DOC_READ", "description": "Read docs"}, headers=headers
        ).status_code == 201
        assert client.post("/v1/rights", json={"authority": "DOC_READ"}, headers=headers).status_code == 409
        assert client.get("/v1/rights/DOC_READ", headers=headers).json()["data"]["description"] == "Read docs"
        assert client.delete("/v1/rights/DOC_READ", headers=headers).status_code == 204
        assert client.get("/v1/rights/DOC_READ", headers=headers).status_code == 404


class TestApiTokenEndpoints:
    def test_create_use_and_revoke(self, client, admin_tokens):
        headers = _bearer(admin_tokens["access_token"])
        response = client.post(
            "/v1/api-tokens", json={"description": "ci", "rights": ["USER_READ"]}, headers=headers
        )
        assert response.status_code == 201
        created = response.json()["data"]
        api_headers = _bearer(created["token"])

        assert client.get("/v1/users", headers=api_headers).status_code == 200
        assert client.get("/v1/roles", headers=api_headers).status_code == 403
        assert client.post(
            "/v1/api-tokens", json={"description": "nested", "rights": ["USER_READ"]}, headers=api_headers
        ).status_code == 403

        listed = client.get("/v1/api-tokens", headers=headers).json()["data"]
        assert [t["description"] for t in listed] == ["ci"]
        assert listed[0]["token"] is None

        revoked = client.delete(f"/v1/api-tokens/{created['id']}", headers=headers)
        assert revoked.json()["data"]["status"] == "REVOKED"
        assert client.get("/v1/users", headers=api_headers).status_code == 401

    def test_expiry_without_timezone_is_utc(self, client, admin_tokens):
        response = client.post(
            "/v1/api-tokens",
            json={"description": "ci", "rights": ["USER_READ"], "valid_until": "2099-01-01T00:00:00"},
            headers=_bearer(admin_tokens["access_token"]),
        )
        assert response.status_code == 201
        assert response.json()["data"]["valid_until"].startswith("2099-01-01T00:00:00")

    def test_expiry_in_past_is_rejected(self, client, admin_tokens):
        response = client.post(
            "/v1/api-tokens",
            json={"description": "ci", "rights": ["USER_READ"], "valid_until": "2000-01-01T00:00:00Z"},
            headers=_bearer(admin_tokens["access_token"]),
        )
        assert response.status_code == 400


class TestAppInternals:
    async def test_health_reports_memory_store(self):
        result = await app_module.health()
        assert result["status"] == "healthy"
        assert result["version"] == app_module.__version__

    async def test_cleanup_loop_stops_on_cancel(self):
        task = asyncio.create_task(app_module._run_session_cleanup(60))
        await asyncio.sleep(0.05)
        task.cancel()
        await task
        assert task.done()
