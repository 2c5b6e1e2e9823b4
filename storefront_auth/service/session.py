from __future__ import annotations

import json
import uuid
from typing import Any, List, Optional

from storefront_auth.logging import get_logger
from storefront_auth.service.capabilities import Clock, now_ms
from storefront_auth.storage.models import (
    RiskAction,
    RiskLevel,
    SecurityEvent,
    SessionValidation,
    StoredSession,
)

logger = get_logger(__name__)

SESSIONS_KEY = "user_sessions"
SECURITY_EVENTS_KEY = "security_events"
CURRENT_SESSION_KEY = "current_session_id"

DEFAULT_MAX_INACTIVITY_MS = 30 * 60 * 1000
DEFAULT_MAX_CONCURRENT_SESSIONS = 3
MAX_SECURITY_EVENTS = 1000


class SessionManager:
    """Tracks the device session behind an authenticated user.

    A session pins the device fingerprint seen at login. Validation flags
    inactivity, fingerprint drift and risky device signals, and records a
    security event log alongside the stored sessions.
    """

    def __init__(
        self,
        kv: Any,
        fingerprinter: Any,
        *,
        clock: Clock,
        max_inactivity_ms: int = DEFAULT_MAX_INACTIVITY_MS,
        max_concurrent_sessions: int = DEFAULT_MAX_CONCURRENT_SESSIONS,
    ) -> None:
        self.kv = kv
        self.fingerprinter = fingerprinter
        self.clock = clock
        self.max_inactivity_ms = max_inactivity_ms
        self.max_concurrent_sessions = max_concurrent_sessions
        self.current_session: Optional[StoredSession] = None
        self._events: List[SecurityEvent] = []
        self.logger = logger

    async def _load_sessions(self) -> List[StoredSession]:
        raw = await self.kv.get(SESSIONS_KEY)
        if not raw:
            return []
        try:
            return [StoredSession.from_dict(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            self.logger.warning("stored_sessions_unreadable", error=str(exc))
            return []

    async def _save_sessions(self, sessions: List[StoredSession]) -> None:
        await self.kv.set(SESSIONS_KEY, json.dumps([s.to_dict() for s in sessions]))

    async def _store_session(self, session: StoredSession) -> None:
        sessions = [s for s in await self._load_sessions() if s.session_id != session.session_id]
        sessions.append(session)
        await self._save_sessions(sessions)

    async def _remove_stored_session(self, session_id: str) -> None:
        sessions = await self._load_sessions()
        await self._save_sessions([s for s in sessions if s.session_id != session_id])

    async def _log_security_event(self, event: SecurityEvent) -> None:
        self._events.append(event)
        if len(self._events) > MAX_SECURITY_EVENTS:
            self._events = self._events[-MAX_SECURITY_EVENTS:]
        await self.kv.set(SECURITY_EVENTS_KEY, json.dumps([e.to_dict() for e in self._events]))
        if event.risk_level == RiskLevel.HIGH:
            self.logger.warning(
                "high_risk_security_event", type=event.type, session_id=event.session_id
            )

    async def load(self) -> None:
        """Restore the current session and the security event log from storage."""
        raw_events = await self.kv.get(SECURITY_EVENTS_KEY)
        if raw_events:
            try:
                self._events = [SecurityEvent.from_dict(e) for e in json.loads(raw_events)]
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                self.logger.warning("security_events_unreadable", error=str(exc))
                self._events = []
        current_id = await self.kv.get(CURRENT_SESSION_KEY)
        if current_id:
            for session in await self._load_sessions():
                if session.session_id == current_id and session.is_active:
                    self.current_session = session
                    break

    async def _enforce_concurrency(self, user_id: str) -> None:
        sessions = await self._load_sessions()
        active = [s for s in sessions if s.user_id == user_id and s.is_active]
        if len(active) < self.max_concurrent_sessions:
            return
        oldest = min(active, key=lambda s: s.last_activity)
        await self._log_security_event(
            SecurityEvent(
                type="concurrent_session",
                timestamp=now_ms(self.clock),
                session_id=oldest.session_id,
                risk_level=RiskLevel.MEDIUM,
                details={"reason": "Max concurrent sessions exceeded"},
            )
        )
        await self._remove_stored_session(oldest.session_id)

    async def create_session(
        self,
        user_id: str,
        *,
        max_inactivity_ms: Optional[int] = None,
        risk_level: Optional[RiskLevel] = None,
    ) -> StoredSession:
        device = await self.fingerprinter.validate_device_for_auth()
        await self._enforce_concurrency(user_id)

        now = now_ms(self.clock)
        session = StoredSession(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            device_fingerprint=device.fingerprint,
            created_at=now,
            last_activity=now,
            max_inactivity_ms=max_inactivity_ms or self.max_inactivity_ms,
            risk_level=risk_level or device.risk_level,
        )
        self.current_session = session
        await self._store_session(session)
        await self.kv.set(CURRENT_SESSION_KEY, session.session_id)
        await self._log_security_event(
            SecurityEvent(
                type="login",
                timestamp=now,
                session_id=session.session_id,
                risk_level=session.risk_level,
                details={"is_new_device": device.is_new_device},
            )
        )
        self.logger.info(
            "session_created",
            session_id=session.session_id,
            risk_level=session.risk_level.value,
            is_new_device=device.is_new_device,
        )
        return session

    async def validate_current_session(self) -> SessionValidation:
        session = self.current_session
        if session is None:
            return SessionValidation(
                is_valid=False,
                risk_level=RiskLevel.HIGH,
                reasons=["No active session"],
                requires_reauth=True,
            )

        now = now_ms(self.clock)
        reasons: List[str] = []
        risk = RiskLevel.LOW
        requires_reauth = False
        device_changed = False

        if now - session.last_activity > session.max_inactivity_ms:
            reasons.append("Session expired due to inactivity")
            risk = RiskLevel.HIGH
            requires_reauth = True

        current = await self.fingerprinter.generate_fingerprint()
        validation = self.fingerprinter.validate_fingerprint(
            current.fingerprint, session.device_fingerprint
        )
        if not validation.is_valid:
            reasons.append("Device fingerprint mismatch")
            device_changed = True
            risk = RiskLevel.HIGH
            requires_reauth = True
        elif validation.risk_level == RiskLevel.MEDIUM:
            reasons.append("Device fingerprint partially changed")
            if risk == RiskLevel.LOW:
                risk = RiskLevel.MEDIUM

        assessment = self.fingerprinter.assess_device_risk(current.device_info)
        if assessment.recommendation == RiskAction.BLOCK:
            reasons.append("Suspicious device activity detected")
            risk = RiskLevel.HIGH
            requires_reauth = True
        elif assessment.recommendation == RiskAction.CHALLENGE:
            reasons.append("Elevated risk detected")
            if risk == RiskLevel.LOW:
                risk = RiskLevel.MEDIUM

        if requires_reauth:
            await self._log_security_event(
                SecurityEvent(
                    type="suspicious_activity",
                    timestamp=now,
                    session_id=session.session_id,
                    risk_level=risk,
                    details={"reasons": reasons, "device_changed": device_changed},
                )
            )
        else:
            session.last_activity = now
            session.risk_level = risk
            await self._store_session(session)

        return SessionValidation(
            is_valid=not requires_reauth,
            risk_level=risk,
            reasons=reasons,
            requires_reauth=requires_reauth,
            device_changed=device_changed,
        )

    async def update_last_activity(self) -> None:
        session = self.current_session
        if session is None or not session.is_active:
            return
        session.last_activity = now_ms(self.clock)
        await self._store_session(session)

    def touch(self, timestamp: int) -> None:
        """In-memory activity bump; persisted on the next validation or update."""
        session = self.current_session
        if session is not None and session.is_active:
            session.last_activity = max(session.last_activity, timestamp)

    async def terminate_session(self, reason: str = "User logout") -> None:
        session = self.current_session
        if session is None:
            return
        await self._log_security_event(
            SecurityEvent(
                type="logout",
                timestamp=now_ms(self.clock),
                session_id=session.session_id,
                risk_level=session.risk_level,
                details={"reason": reason},
            )
        )
        session.is_active = False
        await self._remove_stored_session(session.session_id)
        await self.kv.delete(CURRENT_SESSION_KEY)
        self.current_session = None
        self.logger.info("session_terminated", session_id=session.session_id, reason=reason)

    def has_active_session(self) -> bool:
        return self.current_session is not None and self.current_session.is_active

    def get_security_events(self, limit: int = 50) -> List[SecurityEvent]:
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]

    def has_high_risk_events(self, limit: int = 50) -> bool:
        return any(e.risk_level == RiskLevel.HIGH for e in self.get_security_events(limit))

    async def clear_all_session_data(self) -> None:
        self.current_session = None
        self._events = []
        await self.kv.delete(SESSIONS_KEY, SECURITY_EVENTS_KEY, CURRENT_SESSION_KEY)
        await self.fingerprinter.clear_stored_fingerprint()
