from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hotelbook.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hotelbook", "DATABASE_URL"
    )
    redis_url: str = env_field("", "REDIS_URL")
    state_dir: str = env_field("/var/lib/hotelbook", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI: in-process rate limits, no SMTP",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing key for refresh tokens; derived from JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("hotelbook", "JWT_ISSUER")
    jwt_audience: str = env_field("hotelbook-web", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )

    # Account security policy
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)
    password_expiry_days: int = env_field(90, "PASSWORD_EXPIRY_DAYS", ge=1)
    password_history_size: int = env_field(3, "PASSWORD_HISTORY_SIZE", ge=1)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # PII at rest
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Key material for phone number encryption; falls back to JWT_SECRET",
    )

    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    signup_rate_limit_per_minute: int = env_field(
        10, "SIGNUP_RATE_LIMIT_PER_MINUTE", ge=1
    )
    login_rate_limit_per_minute: int = env_field(
        10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1
    )
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE", ge=1)
    password_change_rate_limit_per_minute: int = env_field(
        5, "PASSWORD_CHANGE_RATE_LIMIT_PER_MINUTE", ge=1
    )

    # OTP delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Hotelbook", "EMAIL_FROM_NAME")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so sessions survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/hotelbook"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside containers
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
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
