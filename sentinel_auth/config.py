from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentinel_auth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable service settings, built once at start-up and injected."""

    # Token issuer
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sentinel-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("sentinel-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # One-shot tokens
    verification_token_ttl_hours: int = env_field(
        24, "VERIFICATION_TOKEN_TTL_HOURS", gt=0
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", gt=0)

    # argon2id cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(
        65536, "PASSWORD_MEMORY_COST", ge=8, description="Memory cost in KiB"
    )
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)

    login_alert_threshold_days: int = env_field(
        7,
        "LOGIN_ALERT_THRESHOLD_DAYS",
        ge=0,
        description="Days since the last login from another IP before a login alert is sent",
    )

    # Links embedded in emails
    app_base_url: str = env_field("http://localhost:3001", "APP_URL")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Email delivery
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    resend_api_url: str = env_field("https://api.resend.com/emails", "RESEND_API_URL")
    email_from: str = env_field("Sentinel AI <onboarding@resend.dev>", "EMAIL_FROM")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")

    # Persistence
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/sentinel_auth", "DATABASE_URL"
    )
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for memory store snapshots; snapshots are disabled when unset",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")

    # HTTP surface
    rate_limit_requests: int = env_field(10, "RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses or CIDR ranges whose X-Forwarded-For header is honoured",
    )

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, sync Redis client)",
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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_base_url", "frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            redis_enabled=bool(_settings_cache.redis_url),
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
