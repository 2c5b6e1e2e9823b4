from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional

from storefront_auth.logging import get_logger, set_correlation_id
from storefront_auth.service.capabilities import Clock, now_ms
from storefront_auth.service.errors import ServiceError, SessionExpiredError
from storefront_auth.storage.errors import StorageError
from storefront_auth.storage.models import (
    IdentityRecord,
    RiskLevel,
    TokenEvent,
    TokenEventType,
    TokenRecord,
)

logger = get_logger(__name__)

DEFAULT_SESSION_VALIDATION_INTERVAL_SECONDS = 5 * 60
DEFAULT_TOKEN_CHECK_INTERVAL_SECONDS = 10 * 60
DEFAULT_FORCED_REFRESH_INTERVAL_SECONDS = 60 * 60

ACTIVITY_EVENTS = frozenset({"mousedown", "mousemove", "keypress", "scroll", "touchstart", "click"})


@dataclass
class AuthState:
    is_authenticated: bool = False
    customer: Optional[IdentityRecord] = None
    session_risk_level: RiskLevel = RiskLevel.LOW
    is_session_valid: bool = True
    has_high_risk_events: bool = False
    is_session_expiring_soon: bool = False
    last_activity: Optional[int] = None
    error: Optional[str] = None


class SessionOrchestrator:
    """Application-level owner of the authenticated session.

    Restores state on startup, runs the periodic session-risk, token-check
    and forced-refresh timers while authenticated, and turns any refresh
    failure into a full logout.
    """

    def __init__(
        self,
        token_manager: Any,
        token_store: Any,
        session_manager: Any = None,
        *,
        clock: Clock,
        session_validation_interval: float = DEFAULT_SESSION_VALIDATION_INTERVAL_SECONDS,
        token_check_interval: float = DEFAULT_TOKEN_CHECK_INTERVAL_SECONDS,
        forced_refresh_interval: float = DEFAULT_FORCED_REFRESH_INTERVAL_SECONDS,
    ) -> None:
        self.token_manager = token_manager
        self.token_store = token_store
        self.session_manager = session_manager
        self.clock = clock
        self.session_validation_interval = session_validation_interval
        self.token_check_interval = token_check_interval
        self.forced_refresh_interval = forced_refresh_interval
        self._state = AuthState()
        self._timers: List[asyncio.Task] = []
        self._logging_out = False
        self._listening = False
        self.logger = logger

    @property
    def state(self) -> AuthState:
        return replace(
            self._state,
            is_session_expiring_soon=self._state.is_authenticated
            and self.token_store.is_token_expiring_soon(),
        )

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    async def _attach(self) -> None:
        if self._listening:
            return
        await self.token_manager.start()
        self.token_manager.add_event_listener(TokenEventType.TOKEN_EXPIRED, self._on_token_expired)
        self._listening = True

    async def _on_token_expired(self, event: TokenEvent) -> None:
        if self._state.is_authenticated:
            await self.logout(reason=event.data.get("reason", "token_expired"), forced=True)

    async def initialize(self) -> bool:
        """Restore persisted state and resume the session if the tokens allow it."""
        set_correlation_id()
        await self._attach()
        await self.token_store.reload()
        if self.session_manager is not None:
            await self.session_manager.load()

        if self.token_store.peek_access_token():
            if self.token_store.is_token_expiring_soon():
                self.logger.info("session_restore_refresh", reason="expiring_soon")
                if not await self.token_manager.refresh_token():
                    return self._mark_unauthenticated()
        elif self.token_store.has_refresh_token():
            # Access token lost but the refresh token survived; try before giving up
            self.logger.info("session_restore_refresh", reason="refresh_token_only")
            if not await self.token_manager.refresh_token():
                return self._mark_unauthenticated()
        else:
            return self._mark_unauthenticated()

        if not self.token_store.is_authenticated():
            return self._mark_unauthenticated()

        await self._become_authenticated()
        if self.session_manager is not None:
            if not self.session_manager.has_active_session():
                customer = self._state.customer
                claims = self.token_manager.get_current_token_claims()
                user_id = customer.id if customer else (claims.sub if claims else None)
                if user_id:
                    await self.session_manager.create_session(user_id)
            await self.validate_session_risk()
        return self._state.is_authenticated

    def _mark_unauthenticated(self) -> bool:
        self._state = AuthState()
        return False

    async def _become_authenticated(self) -> None:
        self._state.is_authenticated = True
        self._state.customer = self.token_store.get_customer_data()
        self._state.error = None
        self._state.last_activity = now_ms(self.clock)
        self.token_manager.start_monitoring()
        self._start_timers()

    async def login(self, tokens: TokenRecord, identity: IdentityRecord) -> None:
        """Adopt tokens issued by a login or registration call."""
        set_correlation_id()
        await self._attach()
        if identity.last_login_at is None:
            identity.last_login_at = now_ms(self.clock)
        await self.token_manager.store_session_tokens(tokens, identity)
        if self.session_manager is not None:
            session = await self.session_manager.create_session(identity.id)
            self._state.session_risk_level = session.risk_level
        await self._become_authenticated()
        self.logger.info("customer_logged_in", customer_id=identity.id)

    async def update_profile(self, identity: IdentityRecord) -> None:
        await self.token_store.update_customer_data(identity)
        self._state.customer = identity

    async def logout(self, reason: str = "User logout", *, forced: bool = False) -> None:
        if self._logging_out:
            return
        self._logging_out = True
        try:
            self._stop_timers()
            if self.session_manager is not None:
                try:
                    await self.session_manager.terminate_session(reason)
                except StorageError as exc:
                    self.logger.warning("session_terminate_failed", error=str(exc))
            await self.token_manager.clear_session()
        finally:
            self._state = AuthState(error=SessionExpiredError().message if forced else None)
            self._logging_out = False
        self.logger.info("customer_logged_out", reason=reason, forced=forced)

    def record_activity(self, event_type: str) -> bool:
        """Note user interaction. Never touches the network or the tokens."""
        if event_type not in ACTIVITY_EVENTS:
            return False
        timestamp = now_ms(self.clock)
        self._state.last_activity = timestamp
        if self.session_manager is not None:
            self.session_manager.touch(timestamp)
        return True

    async def validate_session_risk(self) -> bool:
        if self.session_manager is None or not self._state.is_authenticated:
            return self._state.is_authenticated
        result = await self.session_manager.validate_current_session()
        self._state.session_risk_level = result.risk_level
        self._state.is_session_valid = result.is_valid
        self._state.has_high_risk_events = self.session_manager.has_high_risk_events()
        if not result.is_valid:
            self.logger.warning("session_invalid", reasons=result.reasons)
            await self.logout(reason="Session validation failed", forced=True)
            return False
        return True

    async def periodic_token_check(self) -> bool:
        # Cheap pre-check so quiet periods far from expiry do no work
        if not self.token_store.is_token_expiring_soon():
            return True
        ok = await self.token_manager.validate_and_refresh_if_needed()
        if not ok and self._state.is_authenticated:
            await self.logout(reason="Token validation failed", forced=True)
        return ok

    async def forced_refresh(self) -> bool:
        ok = await self.token_manager.refresh_token()
        if not ok and self._state.is_authenticated:
            await self.logout(reason="Scheduled token refresh failed", forced=True)
        return ok

    def _start_timers(self) -> None:
        if self._timers:
            return
        schedule = [
            ("session_validation", self.session_validation_interval, self.validate_session_risk),
            ("token_check", self.token_check_interval, self.periodic_token_check),
            ("forced_refresh", self.forced_refresh_interval, self.forced_refresh),
        ]
        self._timers = [
            asyncio.create_task(self._timer_loop(name, interval, tick))
            for name, interval, tick in schedule
        ]

    def _stop_timers(self) -> None:
        current = asyncio.current_task()
        for task in self._timers:
            if task is not current and not task.done():
                task.cancel()
        self._timers = []

    async def _timer_loop(
        self, name: str, interval: float, tick: Callable[[], Awaitable[bool]]
    ) -> None:
        while self._state.is_authenticated:
            await self.clock.sleep(interval)
            if not self._state.is_authenticated:
                break
            try:
                await tick()
            except (ServiceError, StorageError) as exc:
                self.logger.error("session_timer_failed", timer=name, error=str(exc))
                await self.logout(reason=f"{name} failed", forced=True)

    async def cleanup(self) -> None:
        timers = list(self._timers)
        self._stop_timers()
        for task in timers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._listening:
            self.token_manager.remove_event_listener(
                TokenEventType.TOKEN_EXPIRED, self._on_token_expired
            )
            self._listening = False
        await self.token_manager.cleanup()
