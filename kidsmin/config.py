from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kidsmin.logging import get_logger

logger = get_logger(__name__)


class TwoFactorChannel(str, Enum):
    """Delivery channels for one-time codes."""

    EMAIL = "email"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/kidsmin", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/kidsmin", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between tests",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("kidsmin", "JWT_ISSUER")
    jwt_audience: str = env_field("kidsmin-portal", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(
        8 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of session tokens returned by login",
    )
    set_password_token_ttl_minutes: int = env_field(
        24 * 60,
        "SET_PASSWORD_TOKEN_TTL_MINUTES",
        description="Lifetime of invite/reset links",
    )
    frontend_url: str = env_field("http://localhost:4200", "FRONTEND_URL")
    # 2FA
    twofa_enabled: bool = env_field(
        True,
        "TWOFA_ENABLED",
        description="Force email 2FA for every account regardless of preference",
    )
    twofa_channel: TwoFactorChannel = env_field(TwoFactorChannel.EMAIL, "TWOFA_CHANNEL")
    twofa_code_ttl_minutes: int = env_field(5, "TWOFA_CODE_TTL_MIN")
    twofa_code_length: int = env_field(6, "TWOFA_CODE_LENGTH")
    twofa_max_attempts: int = env_field(
        5,
        "TWOFA_MAX_ATTEMPTS",
        description="Failed attempts before a challenge locks; 0 disables lockout",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("KidsMin Portal", "EMAIL_FROM_NAME")
    email_dev_mode: bool = env_field(
        False,
        "EMAIL_DEV_MODE",
        description="Log outgoing mail instead of sending it",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("twofa_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("TWOFA_CODE_LENGTH must be between 4 and 10")
        return value

    @field_validator("twofa_max_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError("TWOFA_MAX_ATTEMPTS must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/kidsmin"))
        secret_path = fs_root / ".jwt_secret"

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
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
