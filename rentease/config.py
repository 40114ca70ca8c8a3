from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
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

from rentease.logging import get_logger

logger = get_logger(__name__)

# Persisted secret file per signing key when the env var is unset
_SECRET_FILES = {
    "jwt_secret": ".jwt_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
}

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the RentEase auth service."""

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/rentease", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: synchronous Redis client, no state persistence",
    )
    shared_fs_root: str = env_field("/srv/rentease", "SHARED_FS_ROOT")

    # Signing keys; access and refresh tokens must not share one
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(5 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    session_ttl_seconds: int = env_field(
        5 * 3600,
        "SESSION_TTL_SECONDS",
        description="Lifetime of session:{userId}:{ip}; reset on every refresh",
    )

    # Verification and reset policy
    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    reset_token_ttl_seconds: int = env_field(600, "RESET_TOKEN_TTL_SECONDS")
    max_otp_attempts: int = env_field(8, "MAX_OTP_ATTEMPTS")
    max_resend_attempts: int = env_field(1, "MAX_RESEND_ATTEMPTS")
    password_change_cooldown_days: int = env_field(
        3,
        "PASSWORD_CHANGE_COOLDOWN_DAYS",
        description="Minimum days between completed password resets",
    )

    # Transient persistence error retry
    db_retry_attempts: int = env_field(3, "DB_RETRY_ATTEMPTS")
    db_retry_base_delay_ms: int = env_field(1000, "DB_RETRY_BASE_DELAY_MS")

    # HTTP surface
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    cors_allow_origins: list[str] | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins; defaults to FRONTEND_URL",
    )
    trust_proxy: bool = env_field(
        False,
        "TRUST_PROXY",
        description="Take the client IP from the first X-Forwarded-For hop",
    )
    global_rate_limit: int = env_field(100, "GLOBAL_RATE_LIMIT")
    global_rate_limit_window_seconds: int = env_field(
        15 * 60, "GLOBAL_RATE_LIMIT_WINDOW_SECONDS"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    resend_api_key: str | None = env_field(
        None, "RESEND_API_KEY", description="Send through the Resend HTTP API when set"
    )
    email_from_address: str = env_field("onboarding@resend.dev", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("RentEase", "EMAIL_FROM_NAME")

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
        return self.environment.lower() == "production"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            origins = [item.strip() for item in value.split(",") if item.strip()]
            return origins or None
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_ttl_seconds",
        "otp_ttl_seconds",
        "reset_token_ttl_seconds",
        "max_otp_attempts",
        "max_resend_attempts",
        "db_retry_attempts",
        "global_rate_limit",
        "global_rate_limit_window_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("password_change_cooldown_days", "db_retry_base_delay_ms")
    @classmethod
    def _require_non_negative(cls, value: int, info: ValidationInfo) -> int:
        if value < 0:
            raise ValueError(f"{info.field_name} must not be negative")
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/rentease"))
        secret_path = fs_root / _SECRET_FILES[info.field_name]

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=f"{secret_path.name}_", suffix=".tmp"
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
                f"Unable to persist {info.field_name}; set {info.field_name.upper()} "
                "or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated

    @model_validator(mode="after")
    def _check_distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.cors_allow_origins:
            self.cors_allow_origins = [self.frontend_url]
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
