from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenwarden.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a secret persisted under SHARED_FS_ROOT, generating it on first use.

    Persisting the generated value keeps issued tokens verifiable across
    restarts when no secret is configured explicitly.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tokenwarden"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the token service."""

    api_prefix: str = env_field("v1", "API_PREFIX")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/tokenwarden", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    # Signing secrets; access/refresh and reset tokens never share a key
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    reset_token_secret: str = env_field(None, "RESET_TOKEN_SECRET", validate_default=True)
    access_token_ttl_hours: int = env_field(
        24, "TOKEN_EXPIRY_HOURS", description="Access token lifetime in hours", gt=0
    )
    refresh_token_ttl_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime in days", gt=0
    )
    reset_token_ttl_hours: int = env_field(
        1, "RESET_TOKEN_TTL_HOURS", description="Password reset token lifetime in hours", gt=0
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for clock skew when checking token expiry",
        ge=0,
    )
    reject_superseded_refresh_tokens: bool = env_field(
        True,
        "REJECT_SUPERSEDED_REFRESH_TOKENS",
        description="Only the most recently issued refresh token of a subject may be exchanged",
    )
    revocation_sweep_every: int = env_field(
        100,
        "REVOCATION_SWEEP_EVERY",
        description="Prune expired revocation entries after this many insertions",
        gt=0,
    )
    state_cleanup_interval_minutes: int = env_field(
        5, "STATE_CLEANUP_INTERVAL_MINUTES", ge=0
    )
    # argon2id cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", gt=0)
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST", ge=8)
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", gt=0)
    expose_reset_token: bool = env_field(
        False,
        "EXPOSE_RESET_TOKEN",
        description="Echo the reset token in the forgot-password response (testing only)",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TokenWarden", "EMAIL_FROM_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        return value.strip("/")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("reset_token_secret", mode="before")
    @classmethod
    def _ensure_reset_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".reset_token_secret")

    @model_validator(mode="after")
    def _require_distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.reset_token_secret:
            raise ValueError("JWT_SECRET and RESET_TOKEN_SECRET must differ")
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
