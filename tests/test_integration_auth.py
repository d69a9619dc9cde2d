"""Integration tests for the HTTP surface.

Tests the complete flow including:
- Registration and login
- Logout revoking the presented token
- Password change revoking all tokens once the worker drains
- Admin promotion and deactivation
- Error envelope shapes
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from tokengate import app as app_module
from tokengate.service.runtime import get_runtime
from tokengate.storage.errors import JobQueueError


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, username="alice", email=None, password="TestPassword123!"):
    response = client.post(
        "/v1/auth/register",
        json={"username": username, "email": email or f"{username}@example.com", "password": password},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _drain_worker():
    asyncio.run(get_runtime().user_state_worker.drain())


class TestRegisterAndLogin:
    def test_register_returns_token_and_user(self, client):
        data = _register(client)

        assert data["access_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["username"] == "alice"
        assert data["user"]["role"] == "admin"

    def test_register_duplicate_conflicts(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/register",
            json={"username": "alice", "email": "other@example.com", "password": "TestPassword123!"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"

    def test_register_validates_input(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"username": "a!", "email": "not-an-email", "password": "123"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_login_with_email(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/login",
            json={"username": "alice@example.com", "password": "TestPassword123!"},
        )

        assert response.status_code == 200
        token = response.json()["data"]["access_token"]
        profile = client.get("/v1/auth/profile", headers=_auth(token))
        assert profile.json()["data"]["email"] == "alice@example.com"

    def test_login_with_email_as_registered(self, client):
        _register(client, email="Alice@Example.com")

        response = client.post(
            "/v1/auth/login",
            json={"username": " Alice@Example.com ", "password": "TestPassword123!"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "alice@example.com"

    def test_login_wrong_password(self, client):
        _register(client)

        response = client.post(
            "/v1/auth/login", json={"username": "alice", "password": "wrong-password"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"


class TestRevocationFlows:
    def test_logout_revokes_only_presented_token(self, client):
        first = _register(client)["access_token"]
        second = client.post(
            "/v1/auth/login", json={"username": "alice", "password": "TestPassword123!"}
        ).json()["data"]["access_token"]

        response = client.post("/v1/auth/logout", headers=_auth(first))
        assert response.status_code == 200

        revoked = client.get("/v1/auth/verify", headers=_auth(first))
        assert revoked.status_code == 401
        assert revoked.json()["error"]["message"] == "token revoked"
        assert client.get("/v1/auth/verify", headers=_auth(second)).status_code == 200

    def test_change_password_revokes_after_worker_drain(self, client):
        token = _register(client)["access_token"]

        response = client.patch(
            "/v1/auth/change-password",
            headers=_auth(token),
            json={"current_password": "TestPassword123!", "new_password": "NewPassword456!"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["propagation_enqueued"] is True

        _drain_worker()

        assert client.get("/v1/auth/verify", headers=_auth(token)).status_code == 401
        relogin = client.post(
            "/v1/auth/login", json={"username": "alice", "password": "NewPassword456!"}
        )
        assert relogin.status_code == 200

    def test_change_password_reports_failed_enqueue(self, client):
        token = _register(client)["access_token"]
        get_runtime().queue.enqueue = AsyncMock(
            side_effect=JobQueueError("xadd timed out", operation="xadd")
        )

        response = client.patch(
            "/v1/auth/change-password",
            headers=_auth(token),
            json={"current_password": "TestPassword123!", "new_password": "NewPassword456!"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["propagation_enqueued"] is False

    def test_admin_deactivates_user(self, client):
        admin_token = _register(client, "admin")["access_token"]
        bob = _register(client, "bob")

        response = client.patch(
            f"/v1/auth/deactivate/{bob['user']['id']}", headers=_auth(admin_token)
        )
        assert response.status_code == 200

        # Inactive users are refused by the gate even before propagation
        assert client.get("/v1/auth/verify", headers=_auth(bob["access_token"])).status_code == 401
        _drain_worker()
        revoked = client.get("/v1/auth/verify", headers=_auth(bob["access_token"]))
        assert revoked.json()["error"]["message"] == "token revoked"

    def test_admin_promotes_user(self, client):
        admin_token = _register(client, "admin")["access_token"]
        bob = _register(client, "bob")

        response = client.patch(
            f"/v1/auth/promote/{bob['user']['id']}", headers=_auth(admin_token)
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"
        assert response.json()["data"]["propagation_enqueued"] is True

        _drain_worker()
        verify = client.get("/v1/auth/verify", headers=_auth(bob["access_token"]))
        assert verify.json()["data"]["role"] == "admin"

    def test_non_admin_cannot_promote(self, client):
        admin = _register(client, "admin")
        bob_token = _register(client, "bob")["access_token"]

        response = client.patch(
            f"/v1/auth/promote/{admin['user']['id']}", headers=_auth(bob_token)
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_profile_update_propagates(self, client):
        token = _register(client)["access_token"]

        response = client.patch("/v1/users/me", headers=_auth(token), json={"bio": "hello"})
        assert response.status_code == 200
        assert response.json()["data"]["bio"] == "hello"

        _drain_worker()
        verify = client.get("/v1/auth/verify", headers=_auth(token))
        jti = verify.json()["data"]["token_id"]
        record = asyncio.run(get_runtime().token_cache.get_token(jti))
        assert record.snapshot.bio == "hello"


class TestGateErrors:
    def test_missing_header(self, client):
        response = client.get("/v1/auth/profile")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_token_without_jti(self, client):
        runtime = get_runtime()
        token = runtime.signer.sign(
            {
                "iss": runtime.settings.jwt_issuer,
                "aud": runtime.settings.jwt_audience,
                "sub": "someone",
                "exp": 4102444800,
            }
        )

        response = client.get("/v1/auth/profile", headers=_auth(token))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid token payload"


def test_healthz_reports_backends(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["job_queue"]["backend"] == "memory"
    assert body["checks"]["token_cache"]["fail_mode"] == "open"
    assert response.headers["X-Request-ID"] == "req-123"
