from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service.

    Every field names the environment variable that feeds it; values in a
    local ``.env`` file are used when the process environment is silent.
    Instances are frozen so the signing secret cannot change after startup.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_timeout_seconds: float = env_field(
        3.0,
        "REDIS_TIMEOUT_SECONDS",
        description="Socket and connect timeout applied to every session/blacklist call",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    token_ttl_hours: int = env_field(24, "TOKEN_TTL_HOURS")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    password_reset_token_ttl_hours: int = env_field(
        1, "PASSWORD_RESET_TOKEN_TTL_HOURS"
    )
    allow_sessionless_tokens: bool = env_field(
        True,
        "ALLOW_SESSIONLESS_TOKENS",
        description="Accept bearer tokens minted without a session id",
    )
    default_role: str = env_field("Customer", "DEFAULT_ROLE")
    admin_role: str = env_field("Super Admin", "ADMIN_ROLE")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour: memory backends and an ephemeral signing secret",
    )

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

    @field_validator("token_ttl_hours", "verification_token_ttl_hours", "password_reset_token_ttl_hours")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("jwt_secret"):
            return data
        test_mode = str(data.get("test_mode", "")).lower() in {"1", "true", "yes", "on"}
        if not test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Tokens signed with an ephemeral secret do not survive a restart.
        logger.warning("jwt_secret_ephemeral", reason="test_mode")
        return {**data, "jwt_secret": secrets.token_urlsafe(48)}

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret_length(cls, value: str) -> str:
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value


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
