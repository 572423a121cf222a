from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ISSUER = "student-event-management"
DEFAULT_AUDIENCE = "student-event-app"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, resolved from the environment."""

    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", description="Signing secret for access and action tokens"
    )
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Separate signing secret for refresh tokens",
    )
    jwt_expire: str = env_field("15m", "JWT_EXPIRE")
    jwt_refresh_expire: str = env_field("7d", "JWT_REFRESH_EXPIRE")
    jwt_issuer: str = env_field(DEFAULT_ISSUER, "JWT_ISSUER")
    jwt_audience: str = env_field(DEFAULT_AUDIENCE, "JWT_AUDIENCE")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a replacement refresh token on every refresh",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_operation_timeout: float = env_field(
        5.0,
        "REDIS_OPERATION_TIMEOUT",
        description="Upper bound in seconds for any single revocation store call",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    token_cleanup_interval_hours: float = env_field(6, "TOKEN_CLEANUP_INTERVAL_HOURS")
    token_cleanup_enabled: bool = env_field(True, "TOKEN_CLEANUP_ENABLED")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    notifier_dev_mode: bool = env_field(False, "NOTIFIER_DEV_MODE")
    hibp_enabled: bool = env_field(
        True,
        "HIBP_ENABLED",
        description="Query the Have I Been Pwned range API for breached passwords",
    )
    hibp_timeout_seconds: float = env_field(3.0, "HIBP_TIMEOUT_SECONDS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
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

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _blank_secret_is_missing(cls, value: str | None) -> str | None:
        # An empty env var must not become a usable HMAC key
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("redis_operation_timeout", "hibp_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @property
    def token_cleanup_interval_seconds(self) -> int:
        return max(60, int(self.token_cleanup_interval_hours * 3600))


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if not _settings_cache.jwt_secret or not _settings_cache.jwt_refresh_secret:
            logger.warning(
                "jwt_secrets_missing",
                access_secret_set=bool(_settings_cache.jwt_secret),
                refresh_secret_set=bool(_settings_cache.jwt_refresh_secret),
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
