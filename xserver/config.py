from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from xserver.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the X server.

    Every field can be overridden from the environment (or a ``.env`` file)
    using the name declared in its ``env_field``.
    """

    app_version: str = env_field("1.0.0", "APP_VERSION")
    app_update_url: str = env_field(
        "https://example.com/app/download", "APP_UPDATE_URL"
    )
    api_base_url: str = env_field("/api/v1", "API_BASE_URL")
    debug_mode: bool = env_field(False, "DEBUG_MODE")
    force_update: bool = env_field(False, "APP_FORCE_UPDATE")
    shared_fs_root: str = env_field("/srv/xserver", "SHARED_FS_ROOT")
    persist_state: bool = env_field(
        False,
        "PERSIST_STATE",
        description="Write users and posts to SHARED_FS_ROOT/state as JSON",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token issuance
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    persist_jwt_secret: bool = env_field(
        False,
        "PERSIST_JWT_SECRET",
        description="Store a generated JWT secret so tokens survive restarts",
    )
    jwt_issuer: str = env_field("xserver", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 30, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    remember_me_refresh_ttl_minutes: int = env_field(
        60 * 24 * 30, "REMEMBER_ME_REFRESH_TTL_MINUTES", ge=1
    )

    # Lockout and two-factor
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", ge=1)
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES", ge=1)
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Session maintenance
    session_idle_timeout_minutes: int = env_field(
        60 * 24 * 30, "SESSION_IDLE_TIMEOUT_MINUTES", ge=1
    )
    maintenance_interval_seconds: int = env_field(
        300, "MAINTENANCE_INTERVAL_SECONDS", ge=1
    )

    # Client app configuration (advertised only; uploads are handled elsewhere)
    enable_log_upload: bool = env_field(True, "ENABLE_LOG_UPLOAD")
    log_upload_interval_minutes: int = env_field(60, "LOG_UPLOAD_INTERVAL_MINUTES")
    log_upload_endpoint: str = env_field("/api/v1/logs/upload", "LOG_UPLOAD_ENDPOINT")
    log_retention_days: int = env_field(30, "LOG_RETENTION_DAYS")
    max_upload_size: int = env_field(10 * 1024 * 1024, "MAX_UPLOAD_SIZE")

    # Email delivery for two-factor codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("X Server", "EMAIL_FROM_NAME")

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

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.persist_jwt_secret:
            logger.warning(
                "jwt_secret_ephemeral",
                message="JWT_SECRET unset; tokens issued by this process will not survive a restart",
            )
            self.jwt_secret = secrets.token_urlsafe(64)
            return self
        self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root))
        return self


def _load_or_create_secret(fs_root: Path) -> str:
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            handle.write(generated)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
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
