from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(ValueError):
    """Raised when a setting is missing or inconsistent.

    Subclasses ValueError so pydantic folds it into the model's
    ValidationError both at load time and on assignment.
    """


class SigningAlgorithm(str, Enum):
    """HMAC variants accepted for access-token signatures."""

    HS256 = "hs256"
    HS384 = "hs384"
    HS512 = "hs512"


class SecurityHeadersMode(str, Enum):
    STRICT = "strict"
    DEFAULT = "default"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token signing, session lifetimes and throttling."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionward", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_redis_rate_limits: bool = env_field(
        False,
        "USE_REDIS_RATE_LIMITS",
        description="Share rate-limit counters across processes through Redis",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Token signing
    session_secret: str | None = env_field(
        None, "SESSION_SECRET", validate_default=True
    )
    session_algorithm: SigningAlgorithm = env_field(
        SigningAlgorithm.HS256, "SESSION_ALGORITHM"
    )
    session_expiration_seconds: int = env_field(
        3 * 60,
        "SESSION_EXPIRATION_SECONDS",
        description="Access token lifetime in seconds",
    )
    session_refresh_token_expires_in_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "SESSION_REFRESH_TOKEN_EXPIRES_IN_SECONDS",
        description="Refresh token lifetime, extended on every refresh",
    )
    token_issuer: str = env_field("sessionward", "TOKEN_ISSUER")
    token_subject: str = env_field("session-access-token", "TOKEN_SUBJECT")

    # Rate limiting
    rate_limiting_enabled: bool = env_field(True, "RATE_LIMITING_ENABLED")
    rate_limit_requests_per_minute: int = env_field(
        60, "RATE_LIMIT_REQUESTS_PER_MINUTE"
    )
    credential_rate_limit_per_minute: int = env_field(
        5,
        "CREDENTIAL_RATE_LIMIT_PER_MINUTE",
        description="Limit for throttles keyed by email and for password resets",
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_response_status: int = env_field(429, "RATE_LIMIT_RESPONSE_STATUS")
    rate_limit_response_message: str = env_field(
        "Too many requests, please try again later.",
        "RATE_LIMIT_RESPONSE_MESSAGE",
    )

    # Accounts
    admin_role: str = env_field("admin", "ADMIN_ROLE")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_expires: bool = env_field(True, "PASSWORD_EXPIRES")
    password_expires_in_days: int = env_field(90, "PASSWORD_EXPIRES_IN_DAYS")
    reset_password_token_expires_in_seconds: int = env_field(
        2 * 60 * 60, "RESET_PASSWORD_TOKEN_EXPIRES_IN_SECONDS"
    )
    security_headers: SecurityHeadersMode = env_field(
        SecurityHeadersMode.STRICT, "SECURITY_HEADERS"
    )

    # Email delivery of reset codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessionward", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

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

    def apply(self, **changes: Any) -> "Settings":
        """Return a re-validated copy with ``changes`` applied."""
        return type(self).model_validate({**self.model_dump(), **changes})

    @field_validator("session_secret")
    @classmethod
    def _require_secret(cls, value: str | None) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError("session_secret must be a non-empty string")
        return value

    @field_validator("session_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> SigningAlgorithm:
        raw = value.value if isinstance(value, SigningAlgorithm) else str(value)
        try:
            return SigningAlgorithm(raw.strip().lower())
        except ValueError:
            allowed = ", ".join(a.value for a in SigningAlgorithm)
            raise ConfigurationError(
                f"session_algorithm must be one of: {allowed}"
            ) from None

    @field_validator(
        "session_expiration_seconds",
        "session_refresh_token_expires_in_seconds",
        "rate_limit_requests_per_minute",
        "credential_rate_limit_per_minute",
        "rate_limit_window_seconds",
        "reset_password_token_expires_in_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ConfigurationError(f"{info.field_name} must be greater than 0")
        return value

    @field_validator("rate_limit_response_status")
    @classmethod
    def _validate_status(cls, value: int) -> int:
        if not 400 <= value <= 599:
            raise ConfigurationError(
                "rate_limit_response_status must be an HTTP status between 400 and 599"
            )
        return value

    @field_validator("rate_limit_response_message", "admin_role")
    @classmethod
    def _require_text(cls, value: str, info) -> str:
        if not value or not value.strip():
            raise ConfigurationError(f"{info.field_name} must be a non-empty string")
        return value

    @field_validator("security_headers", mode="before")
    @classmethod
    def _validate_security_headers(cls, value: Any) -> SecurityHeadersMode:
        raw = value.value if isinstance(value, SecurityHeadersMode) else str(value)
        try:
            return SecurityHeadersMode(raw.strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in SecurityHeadersMode)
            raise ConfigurationError(
                f"security_headers must be one of: {allowed}"
            ) from None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            algorithm=_settings_cache.session_algorithm.value,
            rate_limiting_enabled=_settings_cache.rate_limiting_enabled,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
