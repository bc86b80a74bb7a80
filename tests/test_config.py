import pytest
from pydantic import ValidationError

from llmhub.config import Settings, get_settings, reset_settings_cache

ACCESS_SECRET = "access-secret-for-config-tests-0123456789"
REFRESH_SECRET = "refresh-secret-for-config-tests-0123456789"


def test_defaults():
    settings = Settings(jwt_secret=ACCESS_SECRET, jwt_refresh_secret=REFRESH_SECRET)

    assert settings.access_token_ttl_minutes == 24 * 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.token_resend_cooldown_minutes == 3
    assert settings.token_ttl_hours == 24


def test_signing_secrets_must_differ():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=ACCESS_SECRET, jwt_refresh_secret=ACCESS_SECRET)


def test_token_windows_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(
            jwt_secret=ACCESS_SECRET,
            jwt_refresh_secret=REFRESH_SECRET,
            token_resend_cooldown_minutes=0,
        )


def test_front_end_url_trailing_slash_is_stripped():
    settings = Settings(
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        front_end_url="https://app.example.test///",
    )
    assert settings.front_end_url == "https://app.example.test"


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings()
    second = Settings()

    assert first.jwt_secret == second.jwt_secret
    assert first.jwt_refresh_secret == second.jwt_refresh_secret
    assert first.jwt_secret != first.jwt_refresh_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
    assert (tmp_path / ".jwt_refresh_secret").exists()


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example ,")
    monkeypatch.setenv("TOKEN_TTL_HOURS", "48")
    monkeypatch.setenv("FRONT_END_URL", "https://front.example/")

    settings = Settings.from_env()

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.token_ttl_hours == 48
    assert settings.front_end_url == "https://front.example"


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("TOKEN_RESEND_COOLDOWN_MINUTES", "5")
    reset_settings_cache()
    try:
        assert get_settings().token_resend_cooldown_minutes == 5
    finally:
        reset_settings_cache()
