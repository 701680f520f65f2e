"""HTTP-level flows against the FastAPI app with the in-memory runtime."""

import pytest
from fastapi.testclient import TestClient

from warden.app import app
from warden.service.roles import ADMIN_ROLE
from warden.service.runtime import get_runtime
from warden.storage.models import OTPPurpose

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _latest_code(user_id: str, purpose: OTPPurpose) -> str:
    codes = get_runtime().store.list_otp_codes(user_id, purpose)
    return codes[-1].code


def _register(client, username="pat", email="pat@example.com", **extra):
    body = {"username": username, "password": PASSWORD, "email": email, **extra}
    resp = client.post("/v1/auth/register", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["user"]["id"]


def _verified_login(client, username="pat", email="pat@example.com", platform="web"):
    user_id = _register(client, username, email)
    resp = client.post(
        "/v1/auth/otp/verify",
        json={
            "user_id": user_id,
            "code": _latest_code(user_id, OTPPurpose.EMAIL_VERIFICATION),
            "purpose": "EMAIL_VERIFICATION",
        },
    )
    assert resp.status_code == 200, resp.text
    resp = client.post(
        "/v1/auth/login",
        json={"identifier": email, "password": PASSWORD},
        headers={"X-Platform": platform},
    )
    assert resp.status_code == 200, resp.text
    return user_id, resp.json()["data"]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestAuthFlow:
    def test_register_login_refresh_logout(self, client):
        user_id, login = _verified_login(client)
        assert login["token_type"] == "bearer"
        assert login["platform"] == "web"
        assert login["session_id"]
        assert login["expires_in"] == 900

        me = client.get("/v1/me", headers=_bearer(login["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["id"] == user_id
        assert me.json()["data"]["roles"] == ["user"]

        refreshed = client.post(
            "/v1/auth/refresh", json={"refresh_token": login["refresh_token"]}
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["rotated"] is False

        sessions = client.get("/v1/auth/sessions", headers=_bearer(login["access_token"]))
        assert [s["current"] for s in sessions.json()["data"]] == [True]

        out = client.post(
            "/v1/auth/logout",
            json={"refresh_token": login["refresh_token"]},
            headers=_bearer(login["access_token"]),
        )
        assert out.status_code == 200
        assert out.json()["data"]["success"] is True

        assert client.get("/v1/me", headers=_bearer(login["access_token"])).status_code == 401
        again = client.post("/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "unauthorized"

    def test_unverified_login_needs_verification(self, client):
        user_id = _register(client)
        resp = client.post(
            "/v1/auth/login", json={"identifier": "pat", "password": PASSWORD}
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["needs_verification"] is True
        assert data["user_id"] == user_id
        assert data["verification_channel"] == "email"
        assert data["access_token"] is None

    def test_mobile_login_has_no_session(self, client):
        _, login = _verified_login(client, platform="mobile_android")
        assert login["session_id"] is None
        assert login["platform"] == "mobile"

    def test_unknown_platform_is_bad_request(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/login",
            json={"identifier": "pat", "password": PASSWORD, "platform": "smartfridge"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_invalid_credentials(self, client):
        _register(client)
        resp = client.post("/v1/auth/login", json={"identifier": "pat", "password": "wrong-pass"})
        assert resp.status_code == 401
        assert resp.json()["status"] == "error"

    def test_duplicate_registration(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/register",
            json={"username": "pat2", "password": PASSWORD, "email": "pat@example.com"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_password_reset_flow(self, client):
        user_id, login = _verified_login(client)
        resp = client.post(
            "/v1/auth/password/forgot", json={"identifier": "pat@example.com"}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["method"] == "email"

        resp = client.post(
            "/v1/auth/password/reset",
            json={
                "user_id": user_id,
                "code": _latest_code(user_id, OTPPurpose.PASSWORD_RESET),
                "new_password": "AnotherSecret77",
            },
        )
        assert resp.status_code == 200
        assert client.get("/v1/me", headers=_bearer(login["access_token"])).status_code == 401
        relog = client.post(
            "/v1/auth/login", json={"identifier": "pat", "password": "AnotherSecret77"}
        )
        assert relog.status_code == 200
        assert relog.json()["data"]["access_token"]

    def test_otp_resend(self, client):
        user_id = _register(client)
        resp = client.post(
            "/v1/auth/otp/resend",
            json={"user_id": user_id, "purpose": "EMAIL_VERIFICATION"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["channel"] == "email"
        assert resp.json()["data"]["delivered"] is True


class TestRateLimits:
    def test_login_attempts_limited(self, client):
        _register(client)
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            resp = client.post(
                "/v1/auth/login", json={"identifier": "pat", "password": "wrong-pass"}
            )
            assert resp.status_code == 401
        resp = client.post("/v1/auth/login", json={"identifier": "pat", "password": PASSWORD})
        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["error"]["details"]["retry_after"] >= 1


class TestErrorEnvelope:
    def test_validation_error_shape(self, client):
        resp = client.post("/v1/auth/register", json={"username": "x", "password": "short"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_missing_bearer(self, client):
        resp = client.get("/v1/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid or expired credentials"

    def test_non_ascii_signature_is_unauthorized(self, client):
        # eyJhbGciOiJIUzI1NiJ9 is {"alg":"HS256"}
        header = "Bearer eyJhbGciOiJIUzI1NiJ9.e30.éé".encode("utf-8")
        resp = client.get("/v1/me", headers={"Authorization": header})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["status"] == "healthy"


class TestRBACRoutes:
    def _admin_token(self, client) -> str:
        runtime = get_runtime()
        admin = runtime.store.create_user(
            "root", email="root@example.com", is_email_verified=True
        )
        password_hash, algo = runtime.credentials.hash_password(PASSWORD)
        runtime.store.save_password(admin.id, password_hash, algo)
        role = runtime.store.get_role_by_name(ADMIN_ROLE)
        runtime.store.add_user_role(admin.id, role.id)
        resp = client.post(
            "/v1/auth/login", json={"identifier": "root", "password": PASSWORD}
        )
        return resp.json()["data"]["access_token"]

    def test_regular_user_forbidden(self, client):
        _, login = _verified_login(client)
        resp = client.get("/v1/roles", headers=_bearer(login["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_grants_permission_through_role(self, client):
        admin_token = self._admin_token(client)
        user_id, login = _verified_login(client)
        headers = _bearer(admin_token)

        role = client.post("/v1/roles", json={"name": "editor"}, headers=headers)
        assert role.status_code == 201
        role_id = role.json()["data"]["id"]

        perm = client.post(
            "/v1/permissions", json={"resource": "articles", "action": "update"}, headers=headers
        )
        assert perm.status_code == 201
        assert perm.json()["data"]["name"] == "articles:update"
        perm_id = perm.json()["data"]["id"]

        check_url = "/v1/permissions/check?resource=articles&action=update"
        user_headers = _bearer(login["access_token"])
        assert client.get(check_url, headers=user_headers).json()["data"]["allowed"] is False

        assert client.put(
            f"/v1/roles/{role_id}/permissions/{perm_id}", headers=headers
        ).json()["data"]["assigned"] is True
        assert client.put(f"/v1/users/{user_id}/roles/{role_id}", headers=headers).status_code == 200
        assert client.get(check_url, headers=user_headers).json()["data"]["allowed"] is True

        assert client.delete(f"/v1/users/{user_id}/roles/{role_id}", headers=headers).status_code == 200
        assert client.get(check_url, headers=user_headers).json()["data"]["allowed"] is False

        names = [r["name"] for r in client.get("/v1/roles", headers=headers).json()["data"]]
        assert {"admin", "user", "editor"} <= set(names)

    def test_assign_unknown_role(self, client):
        headers = _bearer(self._admin_token(client))
        user_id, _ = _verified_login(client)
        resp = client.put(f"/v1/users/{user_id}/roles/missing", headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
