from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and authorization service."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Token lifetimes
    jwt_issuer: str = env_field("warden", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        86400,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of an ACCESS token, counted from issuance",
    )
    refresh_token_ttl_seconds: int = env_field(
        2592000,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Lifetime of a REFRESH token, counted from issuance",
    )
    api_token_default_ttl_days: int = env_field(
        30,
        "API_TOKEN_DEFAULT_TTL_DAYS",
        description="Validity of an API token when the caller gives no expiration",
    )
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="How often expired session tokens are purged",
    )

    # Account protection
    max_failed_logins: int = env_field(10, "MAX_FAILED_LOGINS")
    reset_token_ttl_minutes: int = env_field(24 * 60, "RESET_TOKEN_TTL_MINUTES")
    email_verification_ttl_days: int = env_field(30, "EMAIL_VERIFICATION_TTL_DAYS")
    reset_delay_min_ms: int = env_field(
        800,
        "RESET_DELAY_MIN_MS",
        description="Lower bound of the random delay around password reset requests",
    )
    reset_delay_max_ms: int = env_field(
        3000,
        "RESET_DELAY_MAX_MS",
        description="Upper bound of the random delay around password reset requests",
    )

    # Identity defaults
    default_role: str = env_field("USER", "DEFAULT_ROLE")
    default_locale: str = env_field("de", "DEFAULT_LOCALE")
    initial_admin_email: str | None = env_field(None, "INITIAL_ADMIN_EMAIL")
    initial_admin_password: str | None = env_field(None, "INITIAL_ADMIN_PASSWORD")

    # Mail
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Warden", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "api_token_default_ttl_days",
        "session_cleanup_interval_seconds",
        "max_failed_logins",
        "reset_token_ttl_minutes",
        "email_verification_ttl_days",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_reset_delay(self) -> "Settings":
        if self.reset_delay_min_ms < 0 or self.reset_delay_max_ms < self.reset_delay_min_ms:
            raise ValueError("reset delay bounds must satisfy 0 <= min <= max")
        if self.access_token_ttl_seconds > self.refresh_token_ttl_seconds:
            logger.warning(
                "access_ttl_exceeds_refresh_ttl",
                access_ttl=self.access_token_ttl_seconds,
                refresh_ttl=self.refresh_token_ttl_seconds,
            )
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
