from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from erpcore.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    app_env: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/erpcore", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process fallbacks for the test suite.",
    )
    state_dir: str = env_field("/var/lib/erpcore", "STATE_DIR")

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("erpcore", "JWT_ISSUER")
    jwt_audience: str = env_field("erpcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    remember_me_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REMEMBER_ME_TTL_MINUTES",
        description="Access token lifetime when the client asked to be remembered",
    )
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    remember_me_session_ttl_minutes: int = env_field(
        7 * 24 * 60, "REMEMBER_ME_SESSION_TTL_MINUTES"
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    verification_token_ttl_minutes: int = env_field(
        24 * 60, "VERIFICATION_TOKEN_TTL_MINUTES"
    )

    password_hash_cost: int = env_field(
        12,
        "PASSWORD_HASH_COST",
        ge=1,
        description="argon2 time cost (number of passes)",
    )
    password_hash_memory_kib: int = env_field(
        19456, "PASSWORD_HASH_MEMORY_KIB", ge=8, description="argon2 memory cost in KiB"
    )

    auth_rate_limit_max_attempts: int = env_field(5, "AUTH_RATE_LIMIT_MAX_ATTEMPTS", ge=1)
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )

    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject logins from subjects that have not verified their email",
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS", gt=0)
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ERP Platform", "EMAIL_FROM_NAME")

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
        return self.app_env == Environment.PRODUCTION

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if self.is_production and len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters in production")
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set in production")
        self.jwt_secret = _load_or_create_secret(Path(self.state_dir))
        return self


def _load_or_create_secret(state_dir: Path) -> str:
    """Reuse a persisted development secret so tokens survive restarts."""

    secret_path = state_dir / ".jwt_secret"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup_failed", path=str(state_dir), error=str(exc))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(secret_path), error=str(exc))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        # Tokens will not survive a restart but the process can still serve
        logger.warning(
            "jwt_secret_persist_failed",
            path=str(secret_path),
            error=str(exc),
            message="Using an ephemeral signing secret; set JWT_SECRET to persist sessions",
        )
    return generated


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
