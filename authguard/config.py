from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from authguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session subsystem."""

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("authguard", "JWT_ISSUER")
    jwt_audience: str = env_field("authguard-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    # Sessions
    max_active_sessions: int = env_field(
        5,
        "MAX_ACTIVE_SESSIONS",
        gt=0,
        description="Active sessions allowed per principal before the least recent is evicted",
    )
    session_invalidate_max_attempts: int = env_field(
        3, "SESSION_INVALIDATE_MAX_ATTEMPTS", gt=0
    )
    session_invalidate_backoff_seconds: float = env_field(
        1.0, "SESSION_INVALIDATE_BACKOFF_SECONDS", ge=0
    )

    # Abuse limits
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    password_reset_rate_limit_per_day: int = env_field(
        3, "PASSWORD_RESET_RATE_LIMIT_PER_DAY"
    )
    verification_requests_per_hour: int = env_field(
        3, "VERIFICATION_REQUESTS_PER_HOUR"
    )
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", gt=0)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", gt=0)

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", gt=0)
    password_max_age_days: int = env_field(
        90,
        "PASSWORD_MAX_AGE_DAYS",
        ge=0,
        description="Days before a password must be changed; 0 disables expiry",
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0
    )

    # Two-factor
    totp_window: int = env_field(
        2, "TOTP_WINDOW", ge=0, description="Accepted clock drift in time-steps"
    )
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS", gt=0)
    totp_issuer: str = env_field("AuthGuard", "TOTP_ISSUER")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", gt=0)
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Collaborators
    redis_url: str | None = env_field(None, "REDIS_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthGuard", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_signing_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", field=info.field_name)
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_signing_material(self) -> "Settings":
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
