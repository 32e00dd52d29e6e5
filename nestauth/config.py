from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nestauth.logging import get_logger

logger = get_logger(__name__)


class RefreshPolicy(str, Enum):
    """What happens to the session behind a refresh token once it is used.

    - ADDITIVE: the old session stays valid and a new one is created
      (sliding sessions; matches the mobile client behaviour).
    - ROTATE: the old session is invalidated; replaying the old refresh
      token fails.
    """

    ADDITIVE = "additive"
    ROTATE = "rotate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, read once at startup and never mutated."""

    database_url: str = env_field(
        "postgresql://localhost:5432/wondernest", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis backend for one-time reset/verification tokens",
    )
    shared_fs_root: str = env_field("/srv/nestauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between tests.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("wondernest-api", "JWT_ISSUER")
    jwt_audience: str = env_field("wondernest-users", "JWT_AUDIENCE")
    jwt_realm: str = env_field("WonderNest API", "JWT_REALM")
    access_token_ttl_seconds: int = env_field(
        60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_policy: RefreshPolicy = env_field(
        RefreshPolicy.ADDITIVE,
        "REFRESH_POLICY",
        description="additive keeps the refreshed session alive, rotate revokes it",
    )

    # Admin console sessions and lockout
    admin_session_ttl_seconds: int = env_field(
        4 * 60 * 60, "ADMIN_SESSION_TTL_SECONDS", gt=0
    )
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_seconds: int = env_field(
        30 * 60, "LOCKOUT_DURATION_SECONDS", gt=0
    )

    # One-time tokens
    password_reset_ttl_seconds: int = env_field(
        24 * 60 * 60, "PASSWORD_RESET_TTL_SECONDS", gt=0
    )
    email_verification_ttl_seconds: int = env_field(
        48 * 60 * 60, "EMAIL_VERIFICATION_TTL_SECONDS", gt=0
    )

    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS", gt=0)
    # 0 disables the background sweep of expired sessions and tokens
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS", ge=0)

    # Federated login
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("WonderNest", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    bind_host: str = env_field("127.0.0.1", "HOST")
    bind_port: int = env_field(8000, "PORT", ge=1, le=65535)
    web_workers: int = env_field(1, "WEB_WORKERS", ge=1)

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("refresh_policy")
    @classmethod
    def _validate_refresh_policy(cls, value: RefreshPolicy) -> RefreshPolicy:
        return RefreshPolicy(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/nestauth"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
            logger.warning("jwt_secret_persisted_too_short", path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _check_ttls(self) -> "Settings":
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("refresh token TTL must exceed access token TTL")
        return self

    @property
    def refresh_audience(self) -> str:
        return f"{self.jwt_audience}-refresh"

    @property
    def admin_audience(self) -> str:
        return f"{self.jwt_audience}-admin"


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
