from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from storefront_auth.config import Settings, get_settings, reset_settings_cache
from storefront_auth.logging import get_logger
from storefront_auth.service.capabilities import (
    EnvironmentSignalSource,
    Sha256Hasher,
    SystemClock,
)
from storefront_auth.service.events import InMemoryEventBus
from storefront_auth.service.fingerprint import DeviceFingerprinter
from storefront_auth.service.http_auth import TokenRefreshAuth
from storefront_auth.service.orchestrator import SessionOrchestrator
from storefront_auth.service.refresh_client import RefreshClient
from storefront_auth.service.session import SessionManager
from storefront_auth.service.token_manager import JWTTokenManager
from storefront_auth.service.token_store import SecureTokenStore
from storefront_auth.storage.memory import MemoryKeyValueStore
from storefront_auth.storage.redis_cache import RedisEventBus, RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the token/session services for one application instance.

    Collaborators can be injected for tests or for hosts that bring their own
    clock, signal source or HTTP client; everything else is built from
    settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        kv: Any = None,
        event_bus: Any = None,
        refresh_client: Any = None,
        signals: Any = None,
        clock: Any = None,
        hasher: Any = None,
    ):
        self.settings = settings or get_settings()
        self.origin = uuid.uuid4().hex
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_redis=self.settings.use_redis,
            test_mode=self.settings.test_mode,
        )

        self.kv = kv
        self.event_bus = event_bus
        redis_error: Exception | None = None
        if self.kv is None and self.settings.use_redis:
            try:
                store = RedisKeyValueStore(
                    self.settings.redis_url, namespace=self.settings.redis_namespace
                )
                store.verify_connection()
                self.kv = store
                if self.event_bus is None:
                    self.event_bus = RedisEventBus(
                        self.settings.redis_url, namespace=self.settings.redis_namespace
                    )
            except Exception as exc:
                redis_error = exc
                self.kv = None

            if self.kv is None:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is unreachable; start Redis or set USE_REDIS=false "
                        "to keep tokens in the local state directory."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message="Running without Redis under TEST_MODE; tokens are process-local.",
                )

        if self.kv is None:
            self.kv = MemoryKeyValueStore(fs_root=self.settings.state_root)
        if self.event_bus is None:
            self.event_bus = InMemoryEventBus()

        self.signals = signals or EnvironmentSignalSource(
            user_agent=self.settings.device_user_agent,
            language=self.settings.device_language,
            screen_resolution=self.settings.device_screen_resolution,
            color_depth=self.settings.device_color_depth,
        )
        self.fingerprinter = DeviceFingerprinter(
            self.kv,
            hasher=hasher or Sha256Hasher(),
            signals=self.signals,
            clock=self.clock,
            max_age_ms=self.settings.fingerprint_max_age_days * 24 * 60 * 60 * 1000,
        )
        self.token_store = SecureTokenStore(
            self.kv,
            encryption_key=self.settings.ensure_encryption_key(),
            clock=self.clock,
            fingerprinter=self.fingerprinter,
            event_bus=self.event_bus,
            origin=self.origin,
            expiring_soon_ms=self.settings.expiring_soon_seconds * 1000,
            refresh_token_max_age_ms=self.settings.refresh_token_max_age_seconds * 1000,
            fingerprint_validation=self.settings.fingerprint_validation_enabled,
        )
        self.refresh_client = refresh_client or RefreshClient(
            self.settings.api_base_url,
            self.settings.resolved_refresh_path,
            timeout=self.settings.http_timeout_seconds,
        )
        self.token_manager = JWTTokenManager(
            self.token_store,
            self.refresh_client,
            self.fingerprinter,
            clock=self.clock,
            event_bus=self.event_bus,
            origin=self.origin,
            refresh_buffer_seconds=self.settings.refresh_buffer_seconds,
            max_retries=self.settings.max_refresh_retries,
            retry_delay_seconds=self.settings.retry_delay_seconds,
            monitor_interval_seconds=self.settings.monitor_interval_seconds,
            device_validation=self.settings.fingerprint_validation_enabled,
        )
        self.sessions = SessionManager(
            self.kv,
            self.fingerprinter,
            clock=self.clock,
            max_inactivity_ms=self.settings.max_inactivity_seconds * 1000,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
        )
        self.orchestrator = SessionOrchestrator(
            self.token_manager,
            self.token_store,
            self.sessions,
            clock=self.clock,
            session_validation_interval=self.settings.session_validation_interval_seconds,
            token_check_interval=self.settings.token_check_interval_seconds,
            forced_refresh_interval=self.settings.forced_refresh_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            origin=self.origin,
            kv_backend=type(self.kv).__name__,
            event_bus=type(self.event_bus).__name__,
            refresh_url=getattr(self.refresh_client, "refresh_url", None),
        )

    def http_auth(self) -> TokenRefreshAuth:
        """Auth flow for the host's own httpx.AsyncClient."""
        return TokenRefreshAuth(self.token_manager, self.token_store)

    async def close(self) -> None:
        await self.orchestrator.cleanup()
        await self.event_bus.close()
        if hasattr(self.refresh_client, "close"):
            await self.refresh_client.close()
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once the runtime exists,
    and a second check under the lock during creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.kv.close())
            except RuntimeError:
                asyncio.run(runtime.kv.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
