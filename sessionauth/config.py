from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# 16 bytes == 128 bits of token entropy
MIN_TOKEN_BYTES = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_backend: bool = env_field(
        False,
        "USE_MEMORY_BACKEND",
        description="Keep sessions in process memory instead of Redis (dev/test only)",
    )
    session_key_prefix: str = env_field("auth:session:", "SESSION_KEY_PREFIX")
    session_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_TTL_SECONDS",
        description="Lifetime granted on login and on every sliding refresh",
    )
    session_max_lifetime_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "SESSION_MAX_LIFETIME_SECONDS",
        description="Absolute cap for sliding sessions measured from creation; 0 disables",
    )
    sliding_expiration: bool = env_field(True, "SLIDING_EXPIRATION")
    session_token_bytes: int = env_field(32, "SESSION_TOKEN_BYTES")
    max_token_attempts: int = env_field(5, "MAX_TOKEN_ATTEMPTS")
    store_operation_timeout_seconds: float = env_field(
        2.0, "STORE_OPERATION_TIMEOUT_SECONDS"
    )
    store_retry_attempts: int = env_field(
        3,
        "STORE_RETRY_ATTEMPTS",
        description="Total attempts for idempotent store calls when the backend is unavailable",
    )
    store_retry_backoff_seconds: float = env_field(0.05, "STORE_RETRY_BACKOFF_SECONDS")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(64 * 1024, "ARGON2_MEMORY_COST_KIB")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    hash_workers: int = env_field(
        4,
        "HASH_WORKERS",
        description="Threads dedicated to password hashing, kept off the event loop",
    )
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")
    max_password_length: int = env_field(1024, "MAX_PASSWORD_LENGTH")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cookie_name: str = env_field("session_token", "COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")

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

    @field_validator("session_token_bytes")
    @classmethod
    def _validate_token_bytes(cls, value: int) -> int:
        if value < MIN_TOKEN_BYTES:
            raise ValueError(
                f"session_token_bytes must be at least {MIN_TOKEN_BYTES} (128 bits)"
            )
        return value

    @field_validator(
        "session_ttl_seconds",
        "max_token_attempts",
        "store_retry_attempts",
        "hash_workers",
        "argon2_time_cost",
        "argon2_parallelism",
    )
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("store_operation_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store operations require a positive timeout")
        return value

    @field_validator("session_max_lifetime_seconds", "store_retry_backoff_seconds")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be lax, strict or none")
        return normalized

    @model_validator(mode="after")
    def _validate_password_bounds(self) -> "Settings":
        if self.min_password_length < 8:
            raise ValueError("min_password_length must be at least 8")
        if self.max_password_length < self.min_password_length:
            raise ValueError("max_password_length must be >= min_password_length")
        if self.cookie_samesite == "none" and not self.cookie_secure:
            raise ValueError("SameSite=None cookies must be Secure")
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
