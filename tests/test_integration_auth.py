"""Integration tests for the HTTP auth surface.

Runs the FastAPI app against the in-memory runtime and walks through:
- Sign-up, verification, sign-in
- Protected endpoints and the guard's error bodies
- Logout and token revocation
- Password reset
- Email change
- Admin role check
"""

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.storage.models import TokenType


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _latest_token(token_type):
    tokens = [t for t in get_runtime().store.tokens.values() if t.token_type == token_type]
    return tokens[-1].token


def _create_user(email="john@example.com", password="password123", *, role=None, verified=True):
    runtime = get_runtime()
    return runtime.store.create_user(
        email,
        runtime.auth.hash_password(password),
        role=role or runtime.settings.default_role,
        is_verified=verified,
    )


def _sign_in(client, email="john@example.com", password="password123"):
    response = client.post("/api/v1/auth/signin", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestSignUpAndVerify:
    def test_signup_then_verify_then_signin(self, client):
        response = client.post(
            "/api/v1/auth/signup",
            json={"email": "Jane@Example.com", "password": "password123", "confirm_password": "password123"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["data"]["email"] == "jane@example.com"
        assert body["data"]["is_verified"] is False
        assert "password_hash" not in body["data"]

        blocked = client.post("/api/v1/auth/signin", json={"email": "jane@example.com", "password": "password123"})
        assert blocked.status_code == 404
        assert blocked.json() == {"message": "user not found", "data": None}

        token = _latest_token(TokenType.EMAIL_VERIFICATION)
        verified = client.get("/api/v1/auth/verify", params={"token": token})
        assert verified.status_code == 200
        assert verified.json()["data"]["is_verified"] is True

        again = client.get("/api/v1/auth/verify", params={"token": token})
        assert again.status_code == 400
        assert again.json()["message"] == "invalid or expired verification token"

        assert _sign_in(client, "jane@example.com")["token"]

    def test_duplicate_signup_conflicts(self, client):
        _create_user("dup@example.com", verified=False)
        response = client.post(
            "/api/v1/auth/signup",
            json={"email": "dup@example.com", "password": "password123", "confirm_password": "password123"},
        )
        assert response.status_code == 409
        assert response.json() == {"message": "email already exists", "data": None}

    def test_password_mismatch_is_422(self, client):
        response = client.post(
            "/api/v1/auth/signup",
            json={"email": "a@example.com", "password": "password123", "confirm_password": "password999"},
        )
        assert response.status_code == 422
        assert response.json()["message"] == "password confirmation does not match"

    def test_missing_body_field_is_422_envelope(self, client):
        response = client.post("/api/v1/auth/signup", json={"password": "password123"})
        assert response.status_code == 422
        body = response.json()
        assert body["data"] is None
        assert "email" in body["message"]


class TestSignIn:
    def test_signin_returns_token_and_session(self, client):
        user = _create_user()
        data = _sign_in(client)

        assert data["session_id"].startswith("sess_")
        assert data["user"]["id"] == user.id
        runtime = get_runtime()
        claims = runtime.codec.validate(data["token"])
        assert claims.session_id == data["session_id"]

    def test_wrong_password_is_401(self, client):
        _create_user()
        response = client.post("/api/v1/auth/signin", json={"email": "john@example.com", "password": "wrongpass1"})
        assert response.status_code == 401
        assert response.json() == {"message": "incorrect password", "data": None}


class TestGuardedEndpoints:
    def test_missing_header(self, client):
        response = client.get("/api/v1/auth/profile")
        assert response.status_code == 401
        assert response.json() == {"message": "Authorization header required", "data": None}

    def test_malformed_header(self, client):
        response = client.get("/api/v1/auth/profile", headers={"Authorization": "Token abc"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid authorization header format. Use: Bearer <token>"

    def test_invalid_token(self, client):
        response = client.get("/api/v1/auth/profile", headers=_bearer("a.b.c"))
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"

    def test_profile_and_sessions(self, client):
        _create_user()
        first = _sign_in(client)
        second = _sign_in(client)

        profile = client.get("/api/v1/auth/profile", headers=_bearer(first["token"]))
        assert profile.status_code == 200
        assert profile.json()["data"]["email"] == "john@example.com"

        sessions = client.get("/api/v1/auth/sessions", headers=_bearer(second["token"])).json()["data"]["sessions"]
        assert {s["session_id"] for s in sessions} == {first["session_id"], second["session_id"]}
        current = [s for s in sessions if s["current"]]
        assert [s["session_id"] for s in current] == [second["session_id"]]

    def test_response_carries_request_id(self, client):
        response = client.get("/api/v1/auth/whoami", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestLogout:
    def test_logout_revokes_token(self, client):
        _create_user()
        data = _sign_in(client)

        response = client.post("/api/v1/auth/logout", headers=_bearer(data["token"]))
        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully", "data": None}

        reused = client.get("/api/v1/auth/profile", headers=_bearer(data["token"]))
        assert reused.status_code == 401
        assert reused.json()["message"] == "Token has been revoked"

    def test_logout_leaves_other_sessions(self, client):
        _create_user()
        first = _sign_in(client)
        second = _sign_in(client)

        client.post("/api/v1/auth/logout", headers=_bearer(first["token"]))

        assert client.get("/api/v1/auth/profile", headers=_bearer(second["token"])).status_code == 200

    def test_logout_all(self, client):
        _create_user()
        first = _sign_in(client)
        second = _sign_in(client)

        response = client.post("/api/v1/auth/logout-all", headers=_bearer(first["token"]))
        assert response.json()["data"] == {"sessions_removed": 2}

        other = client.get("/api/v1/auth/profile", headers=_bearer(second["token"]))
        assert other.status_code == 401
        assert other.json()["message"] == "Session expired or invalid"


class TestPasswordReset:
    def test_forgot_password_hides_unknown_accounts(self, client):
        response = client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert get_runtime().store.tokens == {}

    def test_reset_flow(self, client):
        _create_user()
        known = client.post("/api/v1/auth/forgot-password", json={"email": "john@example.com"})
        unknown = client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.json() == unknown.json()

        token = _latest_token(TokenType.PASSWORD_RESET)
        response = client.post(
            "/api/v1/auth/reset-password",
            json={"token": token, "password": "new-password", "confirm_password": "new-password"},
        )
        assert response.status_code == 200
        assert _sign_in(client, password="new-password")["token"]

        replay = client.post(
            "/api/v1/auth/reset-password",
            json={"token": token, "password": "new-password", "confirm_password": "new-password"},
        )
        assert replay.status_code == 400
        assert replay.json()["message"] == "invalid or expired reset token"


class TestEmailChange:
    def test_change_is_committed_only_after_confirmation(self, client):
        _create_user()
        data = _sign_in(client)

        response = client.put(
            "/api/v1/auth/profile",
            json={"name": "John", "email": "john.new@example.com"},
            headers=_bearer(data["token"]),
        )
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["pending_email"] == "john.new@example.com"
        assert body["user"]["email"] == "john@example.com"
        assert body["user"]["is_verified"] is False

        token = _latest_token(TokenType.EMAIL_CHANGE)
        confirmed = client.get("/api/v1/auth/verify-email-change", params={"token": token})
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["email"] == "john.new@example.com"
        assert _sign_in(client, "john.new@example.com")["token"]

    def test_unknown_profile_field_rejected(self, client):
        _create_user()
        data = _sign_in(client)
        response = client.put("/api/v1/auth/profile", json={"role": "Super Admin"}, headers=_bearer(data["token"]))
        assert response.status_code == 422


class TestOptionalAndAdmin:
    def test_whoami_anonymous_and_authenticated(self, client):
        anonymous = client.get("/api/v1/auth/whoami", headers=_bearer("garbage"))
        assert anonymous.status_code == 200
        assert anonymous.json()["data"]["authenticated"] is False

        user = _create_user()
        data = _sign_in(client)
        known = client.get("/api/v1/auth/whoami", headers=_bearer(data["token"])).json()["data"]
        assert known == {"authenticated": True, "user_id": user.id, "email": "john@example.com", "role": "Customer"}

    def test_non_ascii_signature_is_rejected_not_crashed(self, client):
        _create_user()
        header, payload, _ = _sign_in(client)["token"].split(".")
        forged = {"Authorization": f"Bearer {header}.{payload}.\xe9".encode("latin-1")}

        anonymous = client.get("/api/v1/auth/whoami", headers=forged)
        assert anonymous.status_code == 200
        assert anonymous.json()["data"]["authenticated"] is False

        rejected = client.get("/api/v1/auth/profile", headers=forged)
        assert rejected.status_code == 401
        assert rejected.json() == {"message": "Invalid or expired token", "data": None}

    def test_admin_check_denies_customers(self, client):
        _create_user()
        data = _sign_in(client)
        response = client.get("/api/v1/admin/check", headers=_bearer(data["token"]))
        assert response.status_code == 403
        assert response.json() == {"message": "Access denied", "data": None}

    def test_admin_check_allows_super_admin(self, client):
        _create_user("root@example.com", role="Super Admin")
        data = _sign_in(client, "root@example.com")
        response = client.get("/api/v1/admin/check", headers=_bearer(data["token"]))
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "Super Admin"


def test_health_reports_memory_backends(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"] == {"store": "ok", "cache": "ok"}
