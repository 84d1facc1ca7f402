from __future__ import annotations

import json
import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from trafficlearn.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and access-control core."""

    site_name: str = env_field("Traffic Learning Platform", "SITE_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/traffic_learning", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, memory fallbacks).",
    )
    timezone: str = env_field("Africa/Kigali", "TIMEZONE")

    # Security settings
    session_lifetime_seconds: int = env_field(
        60 * 60 * 24,
        "SESSION_LIFETIME",
        description="Idle lifetime of an authenticated session (sliding).",
    )
    session_store_grace_seconds: int = env_field(
        60 * 60 * 24,
        "SESSION_STORE_GRACE",
        description="Extra time a stored session outlives its idle lifetime so expiry can be reported.",
    )
    csrf_expiry_seconds: int = env_field(
        60 * 60, "CSRF_TOKEN_EXPIRE", description="Validity window of a CSRF token."
    )
    remember_me_days: int = env_field(30, "REMEMBER_ME_DAYS")
    token_bytes: int = env_field(32, "TOKEN_BYTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")

    # Cookies
    session_cookie_name: str = env_field("tl_session", "SESSION_COOKIE_NAME")
    remember_cookie_name: str = env_field("remember_me", "REMEMBER_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Language
    default_language: str = env_field("en", "DEFAULT_LANGUAGE")
    available_languages: list[str] = env_field(["en", "rw"], "AVAILABLE_LANGUAGES")

    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("available_languages", mode="before")
    @classmethod
    def _parse_languages(cls, value: Any) -> Any:
        if isinstance(value, str):
            raw = value.strip()
            if raw.startswith("["):
                return json.loads(raw)
            return [part.strip() for part in raw.split(",") if part.strip()]
        return value

    @field_validator("token_bytes")
    @classmethod
    def _validate_token_bytes(cls, value: int) -> int:
        if value < 32:
            raise ValueError("token_bytes must provide at least 32 bytes of entropy")
        return value

    @field_validator("session_lifetime_seconds", "csrf_expiry_seconds", "remember_me_days")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetimes must be positive")
        return value

    @field_validator("session_store_grace_seconds")
    @classmethod
    def _validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("session_store_grace_seconds cannot be negative")
        return value

    @property
    def session_store_ttl_seconds(self) -> int:
        return self.session_lifetime_seconds + self.session_store_grace_seconds

    @model_validator(mode="after")
    def _default_language_available(self) -> "Settings":
        if self.default_language not in self.available_languages:
            logger.warning(
                "default_language_unavailable",
                default_language=self.default_language,
                available=self.available_languages,
            )
            self.available_languages = [self.default_language, *self.available_languages]
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
