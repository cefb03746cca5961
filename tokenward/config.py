from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)


class CredentialSource(str, Enum):
    """Where a credential extractor looks for a token on the request."""

    BEARER = "bearer"
    COOKIE = "cookie"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


class Settings(BaseModel):
    """Runtime settings for the auth service, overridable via env or .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenward", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory for in-memory store snapshots; unset keeps state in RAM only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits an in-process cache.",
    )
    master_key: str | None = env_field(
        None,
        "MASTER_KEY",
        description="Symmetric secret encrypting signing keys at rest",
    )
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    confirmation_token_ttl_minutes: int = env_field(
        24 * 60, "CONFIRMATION_TOKEN_TTL_MINUTES", gt=0
    )
    reset_password_token_ttl_minutes: int = env_field(
        15, "RESET_PASSWORD_TOKEN_TTL_MINUTES", gt=0
    )
    # Retention must outlive every token signed by the purpose
    access_key_retention_days: int = env_field(31, "ACCESS_KEY_RETENTION_DAYS", gt=0)
    refresh_key_retention_days: int = env_field(61, "REFRESH_KEY_RETENTION_DAYS", gt=0)
    confirmation_key_retention_days: int = env_field(
        31, "CONFIRMATION_KEY_RETENTION_DAYS", gt=0
    )
    reset_password_key_retention_days: int = env_field(
        31, "RESET_PASSWORD_KEY_RETENTION_DAYS", gt=0
    )
    key_rotation_enabled: bool = env_field(
        True,
        "KEY_ROTATION_ENABLED",
        description="Run the monthly signing-key rotation in the background",
    )
    key_rotation_check_interval_seconds: int = env_field(
        3600,
        "KEY_ROTATION_CHECK_INTERVAL_SECONDS",
        gt=0,
        description="Upper bound on how long the rotation loop sleeps between checks",
    )
    atomic_session_rotation: bool = env_field(
        True,
        "ATOMIC_SESSION_ROTATION",
        description="Rotate refresh sessions with one server-side script instead of concurrent writes",
    )
    access_token_source: CredentialSource = env_field(
        CredentialSource.BEARER, "ACCESS_TOKEN_SOURCE"
    )
    refresh_token_source: CredentialSource = env_field(
        CredentialSource.COOKIE, "REFRESH_TOKEN_SOURCE"
    )
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Mail delivery; unset host logs messages instead of sending
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tokenward", "EMAIL_FROM_NAME")

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
    def _parse_origins(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("access_token_source", "refresh_token_source")
    @classmethod
    def _validate_source(cls, value: CredentialSource) -> CredentialSource:
        return CredentialSource(value)

    @model_validator(mode="after")
    def _check_key_retention(self) -> "Settings":
        day = 24 * 60
        windows = {
            "access": (self.access_key_retention_days, self.access_token_ttl_minutes),
            "refresh": (
                self.refresh_key_retention_days,
                self.refresh_token_ttl_days * day,
            ),
            "confirmation": (
                self.confirmation_key_retention_days,
                self.confirmation_token_ttl_minutes,
            ),
            "reset_password": (
                self.reset_password_key_retention_days,
                self.reset_password_token_ttl_minutes,
            ),
        }
        for purpose, (retention_days, ttl_minutes) in windows.items():
            if retention_days * day <= ttl_minutes:
                raise ValueError(
                    f"{purpose} key retention ({retention_days}d) must exceed the "
                    f"token lifetime ({ttl_minutes}m) it signs"
                )
        return self

    @model_validator(mode="after")
    def _require_master_key(self) -> "Settings":
        if self.master_key:
            return self
        if not self.test_mode:
            raise ValueError("MASTER_KEY is required outside TEST_MODE")
        logger.warning(
            "master_key_missing_test_mode",
            message="Using a fixed development master key; never run this outside tests",
        )
        self.master_key = "tokenward-test-master-key"
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
