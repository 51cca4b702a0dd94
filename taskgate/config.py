from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskgate.logging import get_logger

logger = get_logger(__name__)

# 15 days
DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 24 * 15


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_url: str = env_field("http://localhost:8000", "APP_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/taskgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Socket timeout for key-value store calls",
    )
    shared_fs_root: str = env_field("/srv/taskgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for the test suite",
    )

    # Session cookie
    session_secret: str = env_field(
        None,
        "SESSION_SECRET",
        description="Comma-separated signing secrets; the first one signs new cookies",
        validate_default=True,
    )
    session_cookie_name: str = env_field("__auth-session", "SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(
        DEFAULT_SESSION_TTL_SECONDS, "SESSION_TTL_SECONDS", gt=0
    )
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="Defaults to true in production and false otherwise",
    )

    # Emailed one-time code
    login_code_ttl_seconds: int = env_field(60 * 10, "LOGIN_CODE_TTL_SECONDS", gt=0)
    login_code_length: int = env_field(6, "LOGIN_CODE_LENGTH", ge=4, le=12)

    # OAuth
    oauth_state_ttl_seconds: int = env_field(60 * 10, "OAUTH_STATE_TTL_SECONDS", gt=0)
    oauth_google_client_id: Optional[str] = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: Optional[str] = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: Optional[str] = env_field(None, "GITHUB_CLIENT_ID")
    oauth_github_client_secret: Optional[str] = env_field(None, "GITHUB_CLIENT_SECRET")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    oauth_rate_limit_per_minute: int = env_field(20, "OAUTH_RATE_LIMIT_PER_MINUTE")

    # Email delivery
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Taskgate", "EMAIL_FROM_NAME")

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
        return self.environment == Environment.PRODUCTION

    @property
    def session_secrets(self) -> list[str]:
        return [part.strip() for part in self.session_secret.split(",") if part.strip()]

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cookie_secure", mode="before")
    @classmethod
    def _blank_cookie_secure(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if isinstance(value, str) and value.strip(" ,"):
            return value
        # Persist a generated secret so cookies survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/taskgate"))
        secret_path = fs_root / ".session_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup",
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
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_secret_", suffix=".tmp"
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
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("session_secret_generated", path=str(secret_path))
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
