from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from llmhub.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/llmhub"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under SHARED_FS_ROOT, creating it once.

    Persisting keeps issued tokens valid across restarts when no secret is
    configured explicitly.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", _DEFAULT_FS_ROOT))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the API, token lifecycle and mail delivery."""

    database_url: str = env_field("postgresql://localhost:5432/llmhub", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only hooks such as resetting the runtime singleton.",
    )

    # Bearer session pair
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("llmhub", "JWT_ISSUER")
    jwt_audience: str = env_field("llmhub-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime (1 day)"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token lifetime (7 days)"
    )

    # Email verification / password reset tokens
    token_resend_cooldown_minutes: int = env_field(
        3,
        "TOKEN_RESEND_COOLDOWN_MINUTES",
        description="Minimum gap between two mails for the same email and purpose",
    )
    token_ttl_hours: int = env_field(
        24, "TOKEN_TTL_HOURS", description="Age after which a mailed token is rejected"
    )
    front_end_url: str = env_field("http://localhost:3000", "FRONT_END_URL")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("llmhub", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field(
        [], "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("front_end_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("token_resend_cooldown_minutes", "token_ttl_hours")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token windows must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _distinct_signing_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
