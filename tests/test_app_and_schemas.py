import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from llmhub import app as app_module
from llmhub.api import schemas


@pytest.fixture
def client():
    return TestClient(app_module.app)


def test_security_headers_and_health(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_request_id_is_echoed(client):
    response = client.get("/v1/users/me", headers={"X-Request-ID": "req-abc"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "req-abc"
    assert response.json()["request_id"] == "req-abc"


def test_health_reports_unhealthy_store(client, monkeypatch):
    from llmhub.service.runtime import get_runtime

    def broken():
        raise RuntimeError("db down")

    monkeypatch.setattr(get_runtime().store, "verify_connection", broken)

    response = client.get("/healthz")
    assert response.status_code == 503
    assert response.json()["checks"]["database"]["status"] == "unhealthy"


def test_create_app_returns_module_app():
    assert app_module.create_app() is app_module.app


class TestRequestSchemas:
    def test_register_accepts_camel_case_confirmation(self):
        body = schemas.RegisterRequest(
            name=" Ann ",
            email=" Ann@Example.COM ",
            password="Passw0rd!",
            confirmPassword="Passw0rd!",
        )
        assert body.name == "Ann"
        assert body.email == "ann@example.com"
        assert body.confirm_password == "Passw0rd!"

    def test_register_accepts_snake_case_confirmation(self):
        body = schemas.RegisterRequest(
            name="Ann", email="ann@example.com", password="Passw0rd!", confirm_password="x"
        )
        assert body.confirm_password == "x"

    @pytest.mark.parametrize(
        "password",
        ["Sh0rt!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigitsHere!", "NoSpecial123", "Bad pass1!"],
    )
    def test_password_policy(self, password):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(
                name="Ann", email="ann@example.com", password=password, confirm_password=password
            )

    @pytest.mark.parametrize(
        "email", ["plain", "a@b", "@example.com", "a@-bad-.com", "a b@example.com"]
    )
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            schemas.SendMailRequest(email=email)

    def test_zero_width_characters_are_stripped(self):
        body = schemas.SendMailRequest(email="ann\u200b@example.com")
        assert body.email == "ann@example.com"

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            schemas.UpdateUserRequest(name="   ")
        assert schemas.UpdateUserRequest().name is None

    def test_change_password_aliases(self):
        body = schemas.ChangePasswordRequest(
            currentPassword="Old1234!x", newPassword="New1234!x", confirmPassword="New1234!x"
        )
        assert body.current_password == "Old1234!x"
        assert body.new_password == "New1234!x"
