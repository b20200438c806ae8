"""Integration tests for the authentication flow over HTTP.

Covers signup, login, the authentication gate on protected routes and
logout-driven revocation.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from taskman import app as app_module
from taskman.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _signup(client, username="alice", email="a@x.com", password="secret123"):
    return client.post(
        "/users/signup",
        json={"username": username, "email": email, "password": password},
    )


def _login(client, email="a@x.com", password="secret123"):
    return client.post("/users/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def test_welcome(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["data"] == {"message": "Welcome to Task Management System API"}


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


class TestSignupFlow:
    """Tests for user registration."""

    def test_signup_returns_public_user(self, client):
        response = _signup(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["message"] == "user created successfully"
        assert data["user"]["username"] == "alice"
        assert data["user"]["email"] == "a@x.com"
        assert data["user"]["id"]
        assert "password" not in response.text
        assert "password_hash" not in data["user"]

    def test_signup_rejects_duplicate_email(self, client):
        _signup(client)
        response = _signup(client, username="alice-again")

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "alice", "email": "not-an-email", "password": "secret123"},
            {"username": "alice", "email": "a@x.com", "password": "short"},
            {"username": "", "email": "a@x.com", "password": "secret123"},
            {"email": "a@x.com", "password": "secret123"},
        ],
    )
    def test_signup_validates_payload(self, client, payload):
        response = client.post("/users/signup", json=payload)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert get_runtime().store.get_user_by_email("a@x.com") is None


class TestLoginFlow:
    def test_login_returns_bearer_token(self, client):
        _signup(client)
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"].count(".") == 2
        assert data["token_type"] == "Bearer"
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        remaining = expires_at - datetime.now(timezone.utc)
        assert timedelta(minutes=58) < remaining <= timedelta(minutes=60)

    def test_wrong_password_and_unknown_email_look_the_same(self, client):
        _signup(client)
        wrong = _login(client, password="wrongpw")
        unknown = _login(client, email="nobody@x.com", password="wrongpw")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "invalid credentials"


class TestGate:
    """Tests for the authentication gate on protected routes."""

    def test_missing_token(self, client):
        response = client.get("/users/me")
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["message"] == "token required"
        assert error["details"] == {"reason": "token_required"}

    def test_garbage_token(self, client):
        response = client.get("/users/me", headers=_auth("garbage"))
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["message"] == "invalid token"
        assert error["details"] == {"reason": "token_malformed"}

    def test_non_ascii_token_is_rejected_as_invalid(self, client):
        _signup(client)
        header, payload, _ = _login(client).json()["data"]["token"].split(".")
        raw = f"Bearer {header}.{payload}.".encode() + b"\xe9\xe9"

        response = client.get("/users/me", headers={"Authorization": raw})
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "token_malformed"}

    def test_expired_token(self, client):
        user_id = _signup(client).json()["data"]["user"]["id"]
        runtime = get_runtime()
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = runtime.tokens.issue(user_id, timedelta(hours=1), now=past)

        response = client.get("/users/me", headers=_auth(token))
        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "token_expired"}

    def test_deleted_user_is_not_found(self, client):
        user_id = _signup(client).json()["data"]["user"]["id"]
        token = _login(client).json()["data"]["token"]
        get_runtime().store.delete_user(user_id)

        response = client.get("/users/me", headers=_auth(token))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "user no longer exists"

    def test_me_returns_token_owner(self, client):
        user_id = _signup(client).json()["data"]["user"]["id"]
        token = _login(client).json()["data"]["token"]

        response = client.get("/users/me", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["id"] == user_id


def test_signup_login_logout_revokes_token(client):
    user_id = _signup(client).json()["data"]["user"]["id"]
    token = _login(client).json()["data"]["token"]

    me = client.get("/users/me", headers=_auth(token))
    assert me.json()["data"]["id"] == user_id

    logout = client.post("/users/logout", headers=_auth(token))
    assert logout.status_code == 200
    assert logout.json()["data"] == {"message": "user logged out successfully"}

    after = client.get("/users/me", headers=_auth(token))
    assert after.status_code == 401
    assert after.json()["error"]["message"] == "token revoked"

    # A second logout is rejected by the gate before reaching the controller
    again = client.post("/users/logout", headers=_auth(token))
    assert again.status_code == 401
    assert again.json()["error"]["details"] == {"reason": "token_revoked"}


def test_logout_leaves_other_sessions_alive(client):
    _signup(client)
    first = _login(client).json()["data"]["token"]
    second = _login(client).json()["data"]["token"]

    client.post("/users/logout", headers=_auth(first))

    assert client.get("/users/me", headers=_auth(second)).status_code == 200


def test_request_id_round_trip(client):
    response = client.get("/users/me", headers={"X-Request-ID": "trace-42"})
    assert response.headers["X-Request-ID"] == "trace-42"
    assert response.json()["request_id"] == "trace-42"
