from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oceanblog.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_DATA_ROOT = "/srv/oceanblog"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under DATA_ROOT, creating it once.

    Tokens must keep verifying across restarts, so a generated secret is written
    atomically with 0600 permissions and reused on the next start.
    """
    data_root = Path(os.getenv("DATA_ROOT", _DEFAULT_DATA_ROOT))
    secret_path = data_root / filename

    try:
        data_root.mkdir(parents=True, exist_ok=True)
        os.chmod(data_root, 0o700)
    except PermissionError:
        # directory may be owned by another uid in containers
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(data_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(data_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make DATA_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/oceanblog", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    data_root: str = env_field(_DEFAULT_DATA_ROOT, "DATA_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Isolated runs for CI: the memory store keeps no snapshot on disk",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("oceanblog", "JWT_ISSUER")
    jwt_audience: str = env_field("oceanblog-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; shorten for hardened deployments",
    )
    refresh_token_ttl_minutes: int = env_field(30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    email_verification_ttl_minutes: int = env_field(24 * 60, "EMAIL_VERIFICATION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    max_refresh_tokens: int = env_field(5, "MAX_REFRESH_TOKENS")
    strict_refresh_rotation: bool = env_field(
        False,
        "STRICT_REFRESH_ROTATION",
        description="Remove the presented refresh token when a new pair is issued",
    )

    # Lockout
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lock_minutes: int = env_field(120, "LOGIN_LOCK_MINUTES")

    # Rate limits (requests per minute per client)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # Email
    email_enabled: bool = env_field(
        True,
        "EMAIL_ENABLED",
        description="Master switch; SMTP is only used when enabled and SMTP_HOST is set",
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Ocean Blog", "EMAIL_FROM_NAME")
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")

    # HTTP
    cors_allow_origins: str = env_field("http://localhost:3000", "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "email_verification_ttl_minutes",
        "password_reset_ttl_minutes",
        "max_refresh_tokens",
        "login_max_attempts",
        "login_lock_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


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
