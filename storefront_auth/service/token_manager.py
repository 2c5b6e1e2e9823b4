from __future__ import annotations

import asyncio
import base64
import binascii
import inspect
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from storefront_auth.logging import get_logger, sanitize_error_message, set_correlation_id
from storefront_auth.service.capabilities import Clock, now_ms
from storefront_auth.service.errors import (
    DeviceRiskError,
    NoRefreshTokenError,
    ServiceError,
    TokenCorruptedError,
    TokenRefreshError,
)
from storefront_auth.service.events import TOKENS_CLEARED_CHANNEL, TOKENS_UPDATED_CHANNEL
from storefront_auth.storage.errors import StorageError
from storefront_auth.storage.models import (
    IdentityRecord,
    JWTClaims,
    RiskLevel,
    TokenEvent,
    TokenEventType,
    TokenExpirationInfo,
    TokenRecord,
    TokenValidationResult,
    finite_int,
)

logger = get_logger(__name__)

DEFAULT_REFRESH_BUFFER_SECONDS = 300
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MONITOR_INTERVAL_SECONDS = 60.0
# Lifetime assumed when the backend reports no expiry and the token has no exp
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

EventListener = Callable[[TokenEvent], Any]


def _decode_segment(segment: str) -> dict:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    decoded = base64.urlsafe_b64decode(segment + padding)
    payload = json.loads(decoded)
    if not isinstance(payload, dict):
        raise ValueError("jwt payload is not an object")
    return payload


def decode_jwt_payload(token: str) -> Optional[dict]:
    """Decode a JWT payload without verifying the signature.

    Returns None for anything that is not three dot-separated segments with a
    base64url JSON object in the middle.
    """
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        return _decode_segment(parts[1])
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None


class JWTTokenManager:
    """Owns the access/refresh token lifecycle for one application instance.

    Only this class mutates the stored token pair. Refreshes are
    single-flight: concurrent callers share one in-flight attempt. Successful
    refreshes ping sibling instances over the event bus so they reload the
    shared record instead of refreshing themselves.
    """

    def __init__(
        self,
        token_store: Any,
        refresh_client: Any,
        fingerprinter: Any = None,
        *,
        clock: Clock,
        event_bus: Any = None,
        origin: str = "local",
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        monitor_interval_seconds: float = DEFAULT_MONITOR_INTERVAL_SECONDS,
        device_validation: bool = True,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.token_store = token_store
        self.refresh_client = refresh_client
        self.fingerprinter = fingerprinter
        self.clock = clock
        self.event_bus = event_bus
        self.origin = origin
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.monitor_interval_seconds = monitor_interval_seconds
        self.device_validation = device_validation and fingerprinter is not None
        self._refresh_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._monitoring = False
        self._listeners: Dict[TokenEventType, List[EventListener]] = {
            event_type: [] for event_type in TokenEventType
        }
        self._unsubscribers: List[Callable[[], None]] = []
        self.logger = logger

    def add_event_listener(self, event_type: TokenEventType | str, listener: EventListener) -> None:
        self._listeners[TokenEventType(event_type)].append(listener)

    def remove_event_listener(self, event_type: TokenEventType | str, listener: EventListener) -> None:
        listeners = self._listeners[TokenEventType(event_type)]
        if listener in listeners:
            listeners.remove(listener)

    async def _emit(self, event_type: TokenEventType, data: Optional[dict] = None) -> None:
        event = TokenEvent(type=event_type, timestamp=now_ms(self.clock), data=data or {})
        for listener in list(self._listeners[event_type]):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self.logger.error(
                    "token_event_listener_failed", event_type=event_type.value, error=str(exc)
                )

    async def start(self) -> None:
        """Subscribe to sibling pings. Safe to call more than once."""
        if self.event_bus is None or self._unsubscribers:
            return
        self._unsubscribers.append(
            await self.event_bus.subscribe(TOKENS_UPDATED_CHANNEL, self._on_tokens_updated)
        )
        self._unsubscribers.append(
            await self.event_bus.subscribe(TOKENS_CLEARED_CHANNEL, self._on_tokens_cleared)
        )

    async def _on_tokens_updated(self, message: Dict[str, Any]) -> None:
        if message.get("origin") == self.origin:
            return
        self.logger.debug("sibling_tokens_updated", sender=message.get("origin"))
        await self.token_store.reload()
        await self.validate_and_refresh_if_needed()

    async def _on_tokens_cleared(self, message: Dict[str, Any]) -> None:
        if message.get("origin") == self.origin:
            return
        had_token = self.token_store.peek_access_token() is not None
        await self.token_store.reload()
        if had_token and self.token_store.peek_access_token() is None:
            self.stop_monitoring()
            await self._emit(TokenEventType.TOKEN_EXPIRED, {"reason": "cleared_elsewhere"})

    async def _publish(self, channel: str) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            channel, {"origin": self.origin, "timestamp": now_ms(self.clock)}
        )

    async def _clear_corrupted(self, reason: str) -> None:
        self.logger.warning("token_corrupted", reason=reason)
        await self.token_store.clear_tokens()
        self.stop_monitoring()

    def _decode_claims(self, token: str) -> JWTClaims:
        if len(token.split(".")) != 3:
            raise TokenCorruptedError("malformed_structure")
        payload = decode_jwt_payload(token)
        if payload is None:
            raise TokenCorruptedError("undecodable_payload")
        claims = JWTClaims.from_payload(payload)
        if claims.exp is None and payload.get("exp") is not None:
            raise TokenCorruptedError("invalid_expiry")
        return claims

    async def validate_token(self, token: Any) -> TokenValidationResult:
        if not isinstance(token, str) or not token:
            return TokenValidationResult.invalid()

        try:
            claims = self._decode_claims(token)
            exp = claims.exp
            if exp is None:
                stored_expiry = self.token_store.get_token_expiration()
                if stored_expiry is None:
                    raise TokenCorruptedError("missing_expiry")
                exp = stored_expiry // 1000
        except TokenCorruptedError as exc:
            await self._clear_corrupted(exc.message)
            return TokenValidationResult.invalid()

        time_to_expiry = exp - int(self.clock.now())
        is_expired = time_to_expiry <= 0
        needs_refresh = time_to_expiry <= self.refresh_buffer_seconds

        device_ok = True
        if claims.device_id and self.device_validation:
            device_ok = await self._device_matches()

        return TokenValidationResult(
            is_valid=not is_expired and device_ok,
            is_expired=is_expired,
            needs_refresh=needs_refresh,
            time_to_expiry=time_to_expiry,
            claims=claims,
        )

    async def _device_matches(self) -> bool:
        stored = await self.fingerprinter.get_stored_fingerprint()
        if not stored or await self.fingerprinter.is_stored_fingerprint_expired():
            return True
        current = await self.fingerprinter.generate_fingerprint()
        validation = self.fingerprinter.validate_fingerprint(current.fingerprint, stored)
        if not validation.is_valid or validation.risk_level == RiskLevel.HIGH:
            self.logger.warning(
                "token_device_mismatch", similarity=round(validation.similarity, 3)
            )
            return False
        return True

    async def validate_current_token(self) -> TokenValidationResult:
        token = self.token_store.peek_access_token()
        if not token:
            return TokenValidationResult.invalid()
        return await self.validate_token(token)

    async def validate_and_refresh_if_needed(self) -> bool:
        if not self.token_store.peek_access_token():
            return False

        result = await self.validate_current_token()
        if not result.is_valid:
            await self._emit(
                TokenEventType.TOKEN_EXPIRED,
                {"reason": "token_expired" if result.is_expired else "token_invalid"},
            )
            return False

        if result.needs_refresh:
            return await self.refresh_token()
        return True

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def refresh_token(self) -> bool:
        """Refresh the pair, joining any refresh already in flight."""
        if not self.is_refreshing:
            self._refresh_task = asyncio.create_task(self._perform_refresh())
        # Shielded so one cancelled caller does not abort the shared attempt
        return await asyncio.shield(self._refresh_task)

    async def force_refresh(self) -> bool:
        return await self.refresh_token()

    async def _check_device_risk(self) -> None:
        if not self.device_validation:
            return
        result = await self.fingerprinter.validate_device_for_auth()
        if result.risk_level == RiskLevel.HIGH:
            raise DeviceRiskError(
                "High risk device detected. Please re-authenticate.",
                detail={"is_new_device": result.is_new_device},
            )

    async def _perform_refresh(self) -> bool:
        set_correlation_id()
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                await self._check_device_risk()
                refresh_token = await self.token_store.get_refresh_token()
                if not refresh_token:
                    raise NoRefreshTokenError("No refresh token available")
                result = await self.refresh_client.refresh(refresh_token)
                await self._handle_successful_refresh(result, previous_refresh_token=refresh_token)
                return True
            except DeviceRiskError as exc:
                await self._handle_refresh_failure(exc, reason=exc.error_code)
                return False
            except NoRefreshTokenError as exc:
                await self._handle_refresh_failure(exc, reason=exc.error_code)
                return False
            except (TokenRefreshError, StorageError) as exc:
                last_error = exc
                self.logger.warning(
                    "token_refresh_attempt_failed",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    error_code=getattr(exc, "error_code", "storage_error"),
                    error=sanitize_error_message(str(exc)),
                )
                if attempt < self.max_retries:
                    await self.clock.sleep(self.retry_delay_seconds * attempt)

        await self._handle_refresh_failure(last_error, reason="refresh_failed")
        return False

    def _resolve_expiry(self, result: Any, issued_at: int) -> int:
        if result.expires_in:
            return issued_at + int(result.expires_in) * 1000
        expiry = _parse_token_expiry(result.token_expiry)
        if expiry is not None:
            return expiry
        payload = decode_jwt_payload(result.access_token)
        exp = finite_int(payload.get("exp")) if payload else None
        if exp is not None:
            return exp * 1000
        return issued_at + DEFAULT_TOKEN_LIFETIME_SECONDS * 1000

    async def _handle_successful_refresh(self, result: Any, *, previous_refresh_token: str) -> None:
        issued_at = now_ms(self.clock)
        expires_at = self._resolve_expiry(result, issued_at)
        identity = None
        if result.customer:
            try:
                identity = IdentityRecord.from_dict(result.customer)
            except (KeyError, TypeError, ValueError) as exc:
                # The pair is already rotated server-side; keep it even without an identity
                self.logger.warning("refresh_identity_unusable", error=str(exc))

        if identity is None and self.token_store.get_customer_data() is None:
            await self.token_store.update_access_token(
                result.access_token, expires_at, refresh_token=result.refresh_token
            )
        else:
            record = TokenRecord(
                access_token=result.access_token,
                refresh_token=result.refresh_token,
                expires_at=expires_at,
                issued_at=issued_at,
            )
            await self.token_store.store_tokens(record, identity)

        rotated = result.refresh_token != previous_refresh_token
        await self._publish(TOKENS_UPDATED_CHANNEL)
        self.logger.info("token_refreshed", expires_at=expires_at, rotated=rotated)
        await self._emit(
            TokenEventType.TOKEN_REFRESHED, {"expires_at": expires_at, "rotated": rotated}
        )
        if rotated:
            await self._emit(TokenEventType.TOKEN_ROTATED, {"expires_at": expires_at})

    async def _handle_refresh_failure(self, error: Optional[Exception], *, reason: str) -> None:
        message = sanitize_error_message(str(error)) if error else "refresh failed"
        self.logger.error(
            "token_refresh_failed",
            reason=reason,
            error_code=error.error_code if isinstance(error, ServiceError) else None,
            error=message,
        )
        await self._emit(TokenEventType.REFRESH_FAILED, {"reason": reason, "error": message})
        self.stop_monitoring()
        try:
            await self.token_store.clear_tokens()
            if self.fingerprinter is not None:
                await self.fingerprinter.clear_stored_fingerprint()
        except StorageError as exc:
            self.logger.error("token_clear_failed", error=str(exc))
        await self._emit(TokenEventType.TOKEN_EXPIRED, {"reason": reason})

    async def store_session_tokens(
        self, record: TokenRecord, identity: Optional[IdentityRecord] = None
    ) -> None:
        """Persist tokens from a login or registration and begin monitoring."""
        await self.token_store.store_tokens(record, identity)
        await self._publish(TOKENS_UPDATED_CHANNEL)
        self.start_monitoring()

    async def clear_session(self) -> None:
        self.stop_monitoring()
        await self.token_store.clear_tokens()

    def start_monitoring(self) -> None:
        if self._monitoring and self._monitor_task and not self._monitor_task.done():
            return
        self._monitoring = True
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    def stop_monitoring(self) -> None:
        self._monitoring = False
        task = self._monitor_task
        self._monitor_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _monitor_loop(self) -> None:
        while self._monitoring:
            await self.clock.sleep(self.monitor_interval_seconds)
            if not self._monitoring:
                break
            try:
                await self.validate_and_refresh_if_needed()
            except (ServiceError, StorageError) as exc:
                self.logger.error("token_monitor_check_failed", error=str(exc))

    def get_current_token_claims(self) -> Optional[JWTClaims]:
        token = self.token_store.peek_access_token()
        if not token:
            return None
        payload = decode_jwt_payload(token)
        return JWTClaims.from_payload(payload) if payload is not None else None

    def has_permission(self, permission: str) -> bool:
        claims = self.get_current_token_claims()
        return bool(claims and permission in claims.permissions)

    def has_role(self, role: str) -> bool:
        claims = self.get_current_token_claims()
        return bool(claims and claims.role == role)

    def get_token_expiration_info(self) -> TokenExpirationInfo:
        claims = self.get_current_token_claims()
        if claims and claims.exp is not None:
            expires_at = claims.exp * 1000
        else:
            expires_at = self.token_store.get_token_expiration()
        if expires_at is None:
            return TokenExpirationInfo(None, None, True, True)
        time_to_expiry = expires_at // 1000 - int(self.clock.now())
        return TokenExpirationInfo(
            expires_at=expires_at,
            time_to_expiry=time_to_expiry,
            is_expired=time_to_expiry <= 0,
            needs_refresh=time_to_expiry <= self.refresh_buffer_seconds,
        )

    def get_status(self) -> Dict[str, Any]:
        info = self.get_token_expiration_info()
        return {
            "is_refreshing": self.is_refreshing,
            "has_refresh_timer": self._monitor_task is not None and not self._monitor_task.done(),
            "event_listener_count": sum(len(v) for v in self._listeners.values()),
            "token_valid": self.token_store.peek_access_token() is not None and not info.is_expired,
            "time_to_expiry": info.time_to_expiry,
        }

    async def cleanup(self) -> None:
        task = self._monitor_task
        self.stop_monitoring()
        if task and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for listeners in self._listeners.values():
            listeners.clear()


def _parse_token_expiry(value: Any) -> Optional[int]:
    """Epoch milliseconds from a backend ``token_expiry`` (ISO string or epoch)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch seconds stay below 1e11 for the foreseeable future
        return finite_int(value) if value > 1e11 else finite_int(value * 1000)
    if isinstance(value, str):
        text = value.strip()
        try:
            return _parse_token_expiry(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None
