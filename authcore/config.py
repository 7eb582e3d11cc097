from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class AppEnvironment(str, Enum):
    """Deployment environment; production forces strict cookie flags."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str) -> str:
    """Load a signing secret from SHARED_FS_ROOT or generate and persist one.

    Keeps tokens valid across restarts when the operator did not supply the
    secret through the environment.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: Optional[str] = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth core, sourced from env vars and `.env`."""

    app_env: AppEnvironment = env_field(AppEnvironment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory cache fallback and runtime resets for tests.",
    )
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For entry as the source address",
    )
    bind_host: str = env_field("127.0.0.1", "BIND_HOST", description="Interface for `python -m authcore`")
    bind_port: int = env_field(8000, "BIND_PORT", description="Port for `python -m authcore`")

    # Token issuer
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(10, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    access_deny_before: int = env_field(
        0,
        "ACCESS_DENY_BEFORE",
        description="Epoch milliseconds; access tokens issued earlier are rejected (0 disables)",
    )

    # Admin principal
    admin_email: Optional[str] = env_field(None, "ADMIN_EMAIL")
    admin_password: Optional[str] = env_field(
        None,
        "ADMIN_PASSWORD",
        description="Plaintext, bcrypt ($2a$/$2b$/$2y$) or argon2 ($argon2...) secret",
    )

    # Cookies
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cookie_domain: Optional[str] = env_field(None, "COOKIE_DOMAIN")
    refresh_cookie_name: str = env_field("rt", "REFRESH_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_cookie_max_age_days: int = env_field(7, "CSRF_COOKIE_MAX_AGE_DAYS")

    # OTP engine
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(180, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    otp_hourly_quota: int = env_field(10, "OTP_HOURLY_QUOTA")
    otp_quota_window_seconds: int = env_field(3600, "OTP_QUOTA_WINDOW_SECONDS")
    otp_email_subject: str = env_field("Your login code", "OTP_EMAIL_SUBJECT")

    # Admin login throttle
    login_max_failures: int = env_field(5, "LOGIN_MAX_FAILURES")
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES")

    # Email service settings (env vars are fallbacks - prefer the stored SMTP record)
    smtp_host: Optional[str] = env_field(
        None, "SMTP_HOST", description="SMTP server host (overridable via /admin/smtp)"
    )
    smtp_port: int = env_field(
        587, "SMTP_PORT", description="SMTP server port (overridable via /admin/smtp)"
    )
    smtp_user: Optional[str] = env_field(
        None, "SMTP_USER", description="SMTP username (overridable via /admin/smtp)"
    )
    smtp_password: Optional[str] = env_field(
        None, "SMTP_PASSWORD", description="SMTP password (overridable via /admin/smtp)"
    )
    smtp_timeout_seconds: float = env_field(8.0, "SMTP_TIMEOUT_SECONDS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or AppEnvironment.DEVELOPMENT.value
        return value

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".jwt_access_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".jwt_refresh_secret")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "otp_ttl_seconds",
        "otp_max_attempts",
        "otp_resend_cooldown_seconds",
        "otp_hourly_quota",
        "otp_quota_window_seconds",
        "login_max_failures",
        "login_lockout_minutes",
        "csrf_cookie_max_age_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10")
        return value

    @field_validator("bind_port")
    @classmethod
    def _validate_bind_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("bind_port must be between 1 and 65535")
        return value

    @field_validator("access_deny_before")
    @classmethod
    def _validate_deny_before(cls, value: int) -> int:
        if value < 0:
            raise ValueError("access_deny_before must be >= 0")
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnvironment.PRODUCTION

    @property
    def cookie_secure_effective(self) -> bool:
        """Secure/strict cookies when explicitly requested or in production."""
        return self.cookie_secure or self.is_production

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
