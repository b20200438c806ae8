from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskman.logging import get_logger

logger = get_logger(__name__)


class RevocationBackend(str, Enum):
    """Where revoked bearer tokens are recorded."""

    STORE = "store"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskman", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/taskman", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    revocation_backend: RevocationBackend = env_field(
        RevocationBackend.STORE,
        "REVOCATION_BACKEND",
        description="store: revoked tokens live next to users; redis: TTL keys in REDIS_URL",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    port: int = env_field(3000, "PORT")
    cors_allow_origins: list[str] = env_field(
        [], "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskman", "JWT_ISSUER")
    jwt_audience: str = env_field("taskman-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated past a token's exp claim",
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")

    # argon2id cost parameters; fixed for the lifetime of the process
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    revocation_prune_interval_seconds: int = env_field(
        3600,
        "REVOCATION_PRUNE_INTERVAL_SECONDS",
        description="How often expired revocation entries are dropped; 0 disables pruning",
    )

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

    @field_validator("access_token_ttl_minutes")
    @classmethod
    def _validate_token_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("access_token_ttl_minutes must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/taskman")) / ".jwt_secret"
        )


_MIN_SECRET_LENGTH = 32


def _load_or_create_secret(secret_path: Path) -> str:
    """Read the signing key persisted at ``secret_path`` or write a new one.

    Tokens signed before a restart stay valid as long as the file survives.
    A symlinked or too-short file is ignored and replaced.
    """
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    try:
        secret_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        # Rename into place so a concurrent reader never sees a partial key
        fd, tmp_name = tempfile.mkstemp(
            dir=str(secret_path.parent), prefix=".jwt_secret_", suffix=".tmp"
        )
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
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
