from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and session lifecycle."""

    # Backend
    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")
    storefront_slug: str | None = env_field(
        None,
        "STOREFRONT_SLUG",
        description="When set, refresh goes to the storefront-scoped auth endpoint",
    )
    refresh_path: str = env_field("/api/v1/auth/refresh", "AUTH_REFRESH_PATH")
    http_timeout_seconds: float = env_field(10.0, "AUTH_HTTP_TIMEOUT")

    # Token manager
    refresh_buffer_seconds: int = env_field(
        300, "TOKEN_REFRESH_BUFFER", description="Refresh when fewer seconds than this remain"
    )
    max_refresh_retries: int = env_field(3, "TOKEN_MAX_REFRESH_RETRIES")
    retry_delay_seconds: float = env_field(
        1.0, "TOKEN_RETRY_DELAY", description="Linear backoff base; attempt N waits N * delay"
    )
    monitor_interval_seconds: float = env_field(60.0, "TOKEN_MONITOR_INTERVAL")

    # Orchestrator timers
    session_validation_interval_seconds: float = env_field(300.0, "SESSION_VALIDATION_INTERVAL")
    token_check_interval_seconds: float = env_field(600.0, "TOKEN_CHECK_INTERVAL")
    forced_refresh_interval_seconds: float = env_field(3600.0, "FORCED_REFRESH_INTERVAL")
    max_inactivity_seconds: int = env_field(1800, "SESSION_MAX_INACTIVITY")
    max_concurrent_sessions: int = env_field(3, "SESSION_MAX_CONCURRENT")

    # Token store
    expiring_soon_seconds: int = env_field(300, "TOKEN_EXPIRING_SOON")
    refresh_token_max_age_seconds: int = env_field(86400, "REFRESH_TOKEN_MAX_AGE")
    fingerprint_validation_enabled: bool = env_field(True, "FINGERPRINT_VALIDATION")
    fingerprint_max_age_days: int = env_field(30, "FINGERPRINT_MAX_AGE_DAYS")
    token_encryption_key: str | None = env_field(None, "TOKEN_ENCRYPTION_KEY")

    # Persistence
    state_root: str = env_field(
        str(Path.home() / ".storefront_auth"), "STOREFRONT_AUTH_STATE_ROOT"
    )
    use_redis: bool = env_field(False, "USE_REDIS")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_namespace: str = env_field("storefront_auth", "REDIS_NAMESPACE")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Fallback signals for hosts that cannot report them
    device_user_agent: str | None = env_field(None, "DEVICE_USER_AGENT")
    device_language: str | None = env_field(None, "DEVICE_LANGUAGE")
    device_screen_resolution: str = env_field("0x0", "DEVICE_SCREEN_RESOLUTION")
    device_color_depth: int = env_field(24, "DEVICE_COLOR_DEPTH")

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

    @field_validator("max_refresh_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_refresh_retries must be at least 1")
        return value

    @field_validator("refresh_buffer_seconds", "expiring_soon_seconds")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("window must be non-negative")
        return value

    @property
    def resolved_refresh_path(self) -> str:
        if self.storefront_slug:
            return f"/api/v1/storefront/{self.storefront_slug}/auth/refresh"
        return self.refresh_path

    def ensure_encryption_key(self) -> str:
        """Return the token encryption key, generating and persisting one if unset.

        The generated key lives at ``<state_root>/.token_key`` with owner-only
        permissions so every instance sharing the state root can read the
        shared token record.
        """
        if self.token_encryption_key:
            return self.token_encryption_key

        root = Path(self.state_root)
        key_path = root / ".token_key"
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "token_key_dir_setup",
                error=str(exc),
                path=str(root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    self.token_encryption_key = persisted
                    return persisted
            except OSError as exc:
                logger.error("token_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(48)
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=".token_key_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            logger.error("token_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist token encryption key; set TOKEN_ENCRYPTION_KEY "
                "or make STOREFRONT_AUTH_STATE_ROOT writable"
            ) from exc
        self.token_encryption_key = generated
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
