"""Integration tests for authentication flow.

Tests the complete HTTP flow including:
- Registration and the mailed verification link
- Resend throttling
- Login and token refresh
- Forgot / reset password
- Password change and profile endpoints
"""

import pytest
from fastapi.testclient import TestClient

from llmhub import app as app_module
from llmhub.service.runtime import get_runtime

INVALID_TOKEN = "Invalid token or token expired"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _register(client, email, password, name="Test User"):
    return client.post(
        "/v1/auth/register",
        json={
            "name": name,
            "email": email,
            "password": password,
            "confirmPassword": password,
        },
    )


@pytest.fixture
def verified_user(client, mailer, test_user_email, test_user_password):
    """Register a user and follow the mailed verification link."""
    response = _register(client, test_user_email, test_user_password)
    assert response.status_code == 201
    token = mailer.last_token()
    assert client.get(f"/v1/auth/email-verify/{token}").status_code == 200
    return response.json()["data"]


@pytest.fixture
def auth_headers(client, verified_user, test_user_email, test_user_password):
    response = client.post(
        "/v1/auth/login",
        json={"email": test_user_email, "password": test_user_password},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


class TestRegisterFlow:
    """Tests for user registration."""

    def test_register_creates_unverified_user(
        self, client, mailer, test_user_email, test_user_password
    ):
        response = _register(client, test_user_email, test_user_password)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == test_user_email
        assert body["data"]["email_verified"] is False
        assert "password_hash" not in body["data"]
        assert body["request_id"] == response.headers["X-Request-ID"]

        assert len(mailer.sent) == 1
        assert mailer.sent[0]["to"] == test_user_email
        assert mailer.sent[0]["link"].startswith(
            "https://app.example.test/verify-email?token="
        )

    def test_register_rejects_duplicate_email(
        self, client, mailer, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)

        response = _register(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"

    def test_register_validates_email_format(self, client, test_user_password):
        response = _register(client, "invalid-email", test_user_password)
        assert response.status_code == 422

    def test_register_validates_password_strength(self, client, test_user_email):
        response = _register(client, test_user_email, "alllowercase")
        assert response.status_code == 422

    def test_register_rejects_mismatched_confirmation(
        self, client, mailer, test_user_email, test_user_password
    ):
        response = client.post(
            "/v1/auth/register",
            json={
                "name": "Test User",
                "email": test_user_email,
                "password": test_user_password,
                "confirm_password": "Different123!",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert mailer.sent == []

    def test_register_reports_mail_failure(
        self, client, mailer, test_user_email, test_user_password
    ):
        mailer.fail = True

        response = _register(client, test_user_email, test_user_password)

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "delivery_failed"
        assert get_runtime().store.get_user_by_email(test_user_email) is not None


class TestEmailVerification:
    def test_verification_link_verifies_once(
        self, client, mailer, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)
        token = mailer.last_token()

        response = client.get(f"/v1/auth/email-verify/{token}")
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Email verified"}
        assert get_runtime().store.get_user_by_email(test_user_email).email_verified

        again = client.get(f"/v1/auth/email-verify/{token}")
        assert again.status_code == 400
        assert again.json()["error"] == {
            "code": "invalid_token",
            "message": INVALID_TOKEN,
            "details": None,
        }

    def test_unknown_token_gets_generic_message(self, client):
        response = client.get(f"/v1/auth/email-verify/{'0' * 64}")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == INVALID_TOKEN

    def test_resend_is_throttled(self, client, mailer, test_user_email, test_user_password):
        _register(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/auth/resend-verification-email", json={"email": test_user_email}
        )

        assert response.status_code == 429
        assert response.json()["error"]["message"] == "Verification mail sent recently"
        assert len(mailer.sent) == 1

    def test_resend_for_unknown_email(self, client, mailer):
        response = client.post(
            "/v1/auth/resend-verification-email", json={"email": "nobody@example.com"}
        )
        assert response.status_code == 404
        assert mailer.sent == []


class TestLoginFlow:
    def test_login_before_verification_is_forbidden(
        self, client, mailer, test_user_email, test_user_password
    ):
        _register(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_login_wrong_password(self, client, verified_user, test_user_email):
        response = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": "WrongPassword123!"},
        )
        assert response.status_code == 401

    def test_login_unknown_email(self, client):
        response = client.post(
            "/v1/auth/login",
            json={"email": "nobody@example.com", "password": "TestPassword123!"},
        )
        assert response.status_code == 404

    def test_login_returns_token_pair(
        self, client, verified_user, test_user_email, test_user_password
    ):
        response = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        )

        data = response.json()["data"]
        assert data["user_id"] == verified_user["id"]
        assert data["token_type"] == "bearer"
        assert data["access_token"] != data["refresh_token"]

    def test_refresh_token(self, client, verified_user, test_user_email, test_user_password):
        login = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        ).json()["data"]

        response = client.post(
            "/v1/auth/refresh-token", json={"refreshToken": login["refresh_token"]}
        )

        assert response.status_code == 200
        pair = response.json()["data"]
        me = client.get(
            "/v1/users/me", headers={"Authorization": f"Bearer {pair['access_token']}"}
        )
        assert me.status_code == 200

    def test_refresh_rejects_access_token(
        self, client, verified_user, test_user_email, test_user_password
    ):
        login = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        ).json()["data"]

        response = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": login["access_token"]}
        )
        assert response.status_code == 401


class TestPasswordReset:
    def test_forgot_and_reset_password(
        self, client, mailer, verified_user, test_user_email, test_user_password
    ):
        response = client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Forgot password mail sent"
        assert mailer.sent[-1]["kind"] == "password_reset"
        assert "/reset-password?token=" in mailer.sent[-1]["link"]
        token = mailer.last_token()

        new_password = "NewPassword456!"
        reset = client.post(
            f"/v1/auth/reset-password/{token}",
            json={"password": new_password, "confirmPassword": new_password},
        )
        assert reset.status_code == 200

        old_login = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": test_user_password},
        )
        assert old_login.status_code == 401
        new_login = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": new_password}
        )
        assert new_login.status_code == 200

        replay = client.post(
            f"/v1/auth/reset-password/{token}",
            json={"password": "Another789!x", "confirmPassword": "Another789!x"},
        )
        assert replay.status_code == 400
        assert replay.json()["error"]["message"] == INVALID_TOKEN

    def test_forgot_password_is_throttled(self, client, mailer, verified_user, test_user_email):
        client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        response = client.post("/v1/auth/forgot-password", json={"email": test_user_email})

        assert response.status_code == 429
        assert response.json()["error"]["message"] == "Forgot password mail sent recently"

    def test_reset_with_unknown_token(self, client):
        response = client.post(
            "/v1/auth/reset-password/deadbeef",
            json={"password": "NewPassword456!", "confirmPassword": "NewPassword456!"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == INVALID_TOKEN


class TestAuthenticatedEndpoints:
    def test_users_me_requires_token(self, client):
        response = client.get("/v1/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_get_and_update_profile(self, client, auth_headers, test_user_email):
        me = client.get("/v1/users/me", headers=auth_headers)
        assert me.status_code == 200
        assert me.json()["data"]["email"] == test_user_email
        assert me.json()["data"]["email_verified"] is True

        updated = client.put("/v1/users/me", json={"name": "Renamed"}, headers=auth_headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["name"] == "Renamed"

    def test_change_password(self, client, auth_headers, test_user_email, test_user_password):
        response = client.put(
            "/v1/auth/change-password",
            json={
                "currentPassword": test_user_password,
                "newPassword": "Changed123!x",
                "confirmPassword": "Changed123!x",
            },
            headers=auth_headers,
        )
        assert response.status_code == 200

        login = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "Changed123!x"}
        )
        assert login.status_code == 200

    def test_change_password_wrong_current(self, client, auth_headers):
        response = client.put(
            "/v1/auth/change-password",
            json={
                "currentPassword": "WrongPassword123!",
                "newPassword": "Changed123!x",
                "confirmPassword": "Changed123!x",
            },
            headers=auth_headers,
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid current password"

    def test_delete_account(self, client, auth_headers, test_user_email):
        response = client.delete("/v1/users/me", headers=auth_headers)
        assert response.status_code == 200

        assert client.get("/v1/users/me", headers=auth_headers).status_code == 401
        assert get_runtime().store.get_user_by_email(test_user_email) is None


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert response.headers["Cache-Control"].startswith("no-store")
