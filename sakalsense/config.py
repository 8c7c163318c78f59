from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sakalsense.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Stakeholder domains. Each has its own accounts, cookie and sessions."""

    USER = "USER"
    ADMIN = "ADMIN"
    ADMINISTRATOR = "ADMINISTRATOR"

    @property
    def slug(self) -> str:
        return self.value.lower()

    @classmethod
    def from_slug(cls, slug: str) -> "Role":
        return cls(slug.upper())


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    LAPTOP = "laptop"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


# Max concurrent sessions per role
SESSION_LIMIT: dict[Role, int] = {
    Role.USER: 1,
    Role.ADMIN: 2,
    Role.ADMINISTRATOR: 2,
}

# Cookie carrying the signed token, one per role
AUTH_COOKIE: dict[Role, str] = {
    Role.USER: "UToken",
    Role.ADMIN: "AToken",
    Role.ADMINISTRATOR: "SToken",
}

# Reset tokens carry the role in a short prefix
RESET_TOKEN_PREFIX: dict[Role, str] = {
    Role.USER: "usr",
    Role.ADMIN: "adm",
    Role.ADMINISTRATOR: "sup",
}
PREFIX_TO_ROLE: dict[str, Role] = {prefix: role for role, prefix in RESET_TOKEN_PREFIX.items()}

SESSION_TTL_SECONDS = 15 * 24 * 60 * 60
PASSWORD_RESET_TTL_SECONDS = 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    app_env: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/sakalsense", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for tests; permits the in-memory cache fallback.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sakalsense", "JWT_ISSUER")
    session_ttl_seconds: int = env_field(SESSION_TTL_SECONDS, "SESSION_TTL_SECONDS")
    password_reset_ttl_seconds: int = env_field(
        PASSWORD_RESET_TTL_SECONDS, "PASSWORD_RESET_TTL_SECONDS"
    )
    rate_limit_prefix: str = env_field("ratelimit", "RATE_LIMIT_PREFIX")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Read the client IP from X-Forwarded-For / X-Real-IP (behind a proxy only)",
    )
    # Email service settings; no SMTP host means emails are logged instead of sent
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SakalSense", "EMAIL_FROM_NAME")
    email_reply_to: str | None = env_field(None, "EMAIL_REPLY_TO")
    email_max_attempts: int = env_field(3, "EMAIL_MAX_ATTEMPTS")
    email_initial_delay_seconds: float = env_field(1.0, "EMAIL_INITIAL_DELAY_SECONDS")
    email_backoff_multiplier: float = env_field(2.0, "EMAIL_BACKOFF_MULTIPLIER")
    notification_queue_size: int = env_field(1000, "NOTIFICATION_QUEUE_SIZE")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def db_pool_min_size(self) -> int:
        return 5 if self.is_production else 2

    @property
    def db_pool_max_size(self) -> int:
        return 20 if self.is_production else 5

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("session_ttl_seconds", "password_reset_ttl_seconds", "email_max_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        if info.data.get("test_mode"):
            # Tokens only need to survive this process under TEST_MODE
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


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
