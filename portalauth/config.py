from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)


class StorageBackend(str, Enum):
    """Durable client storage implementations."""

    FILE = "file"
    REDIS = "redis"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session coordinator and the CSRF boundary."""

    identity_base_url: str = env_field(
        "http://localhost:3000/api/auth", "IDENTITY_BASE_URL"
    )
    portal_api_base_url: str = env_field(
        "http://localhost:3000/api", "PORTAL_API_BASE_URL"
    )
    request_timeout_seconds: float = env_field(
        20.0,
        "REQUEST_TIMEOUT_SECONDS",
        description="Transport timeout; also bounds how long a refresh attempt can stay in flight",
    )
    # Mirrors the identity provider's access cookie lifetime
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Inferred access credential lifetime when the refresh response carries no expiry",
    )
    refresh_safety_margin_seconds: int = env_field(
        120,
        "REFRESH_SAFETY_MARGIN_SECONDS",
        description="Proactive refresh fires this many seconds before expiry",
    )
    # CSRF double-submit settings
    csrf_secret: str | None = env_field(None, "CSRF_SECRET", validate_default=True)
    csrf_ttl_seconds: int = env_field(24 * 60 * 60, "CSRF_TTL_SECONDS")
    csrf_cookie_name: str = env_field("_csrf", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("x-csrf-token", "CSRF_HEADER_NAME")
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    # Durable client storage
    storage_backend: StorageBackend = env_field(StorageBackend.FILE, "STORAGE_BACKEND")
    storage_path: str = env_field("~/.portalauth/storage.json", "STORAGE_PATH")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    client_info_ttl_hours: int = env_field(24, "CLIENT_INFO_TTL_HOURS")
    user_agent: str = env_field("portalauth-client", "PORTAL_USER_AGENT")
    # Route gating
    login_path: str = env_field("/login", "LOGIN_PATH")
    return_param: str = env_field("r", "LOGIN_RETURN_PARAM")
    public_paths: list[str] = env_field(
        ["/login", "/verify-otp", "/", "/public"],
        "PUBLIC_PATHS",
        description="Comma separated; exact match or path prefix",
    )
    background_sync_enabled: bool = env_field(True, "BACKGROUND_SYNC_ENABLED")

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

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, value: StorageBackend) -> StorageBackend:
        return StorageBackend(value)

    @field_validator("public_paths", mode="before")
    @classmethod
    def _split_public_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("refresh_safety_margin_seconds")
    @classmethod
    def _non_negative_margin(cls, value: int) -> int:
        if value < 0:
            raise ValueError("refresh_safety_margin_seconds must be >= 0")
        return value

    @field_validator("csrf_secret")
    @classmethod
    def _ensure_csrf_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Cookies signed with an ephemeral secret stop validating after a restart
        logger.warning(
            "csrf_secret_generated",
            message="CSRF_SECRET not set; using an ephemeral secret for this process",
        )
        return secrets.token_urlsafe(64)


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
