from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def finite_int(value: Any) -> Optional[int]:
    """``int(value)`` for finite numbers; None for anything else, including bools."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RiskAction(str, Enum):
    """Recommendation produced by the device risk assessment."""

    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


class TokenEventType(str, Enum):
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_EXPIRED = "token_expired"
    REFRESH_FAILED = "refresh_failed"
    TOKEN_ROTATED = "token_rotated"


@dataclass
class TokenRecord:
    """Access/refresh pair as persisted by the secure token store.

    ``expires_at`` and ``issued_at`` are epoch milliseconds.
    """

    access_token: str
    refresh_token: str
    expires_at: int
    token_type: str = "Bearer"
    issued_at: Optional[int] = None
    device_fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=int(data["expires_at"]),
            token_type=data.get("token_type") or "Bearer",
            issued_at=data.get("issued_at"),
            device_fingerprint=data.get("device_fingerprint"),
        )


@dataclass
class IdentityRecord:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email_verified: bool = False
    last_login_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityRecord":
        return cls(
            id=str(data["id"]),
            email=data.get("email", ""),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
            email_verified=bool(data.get("email_verified", False)),
            last_login_at=data.get("last_login_at"),
        )


@dataclass
class JWTClaims:
    """Decoded, unverified JWT payload."""

    sub: Optional[str]
    exp: Optional[int]
    email: Optional[str] = None
    role: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    device_id: Optional[str] = None
    session_id: Optional[str] = None
    iat: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "JWTClaims":
        permissions = payload.get("permissions") or []
        return cls(
            sub=str(payload["sub"]) if payload.get("sub") is not None else None,
            exp=finite_int(payload.get("exp")),
            email=payload.get("email"),
            role=payload.get("role"),
            permissions=[str(p) for p in permissions] if isinstance(permissions, list) else [],
            device_id=payload.get("device_id"),
            session_id=payload.get("session_id"),
            iat=finite_int(payload.get("iat")),
            raw=dict(payload),
        )


@dataclass
class DeviceInfo:
    user_agent: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    color_depth: int = 0
    hardware_concurrency: int = 0
    device_memory: Optional[float] = None
    cookie_enabled: bool = True
    do_not_track: Optional[str] = None
    webdriver: bool = False


@dataclass
class FingerprintResult:
    fingerprint: str
    device_info: DeviceInfo
    timestamp: int
    confidence: Confidence


@dataclass
class FingerprintValidation:
    is_valid: bool
    similarity: float
    risk_level: RiskLevel


@dataclass
class DeviceRiskAssessment:
    risk_score: int
    risk_factors: List[str]
    recommendation: RiskAction


@dataclass
class DeviceAuthResult:
    fingerprint: str
    is_new_device: bool
    risk_level: RiskLevel
    device_info: DeviceInfo


@dataclass
class TokenValidationResult:
    is_valid: bool
    is_expired: bool
    needs_refresh: bool
    time_to_expiry: Optional[int] = None
    claims: Optional[JWTClaims] = None

    @classmethod
    def invalid(cls) -> "TokenValidationResult":
        return cls(is_valid=False, is_expired=True, needs_refresh=True)


@dataclass
class TokenExpirationInfo:
    expires_at: Optional[int]
    time_to_expiry: Optional[int]
    is_expired: bool
    needs_refresh: bool


@dataclass
class TokenEvent:
    type: TokenEventType
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StoredSession:
    """A device session tracked for inactivity and risk evaluation.

    Timestamps are epoch milliseconds.
    """

    session_id: str
    user_id: str
    device_fingerprint: str
    created_at: int
    last_activity: int
    max_inactivity_ms: int
    risk_level: RiskLevel = RiskLevel.LOW
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredSession":
        return cls(
            session_id=data["session_id"],
            user_id=str(data["user_id"]),
            device_fingerprint=data["device_fingerprint"],
            created_at=int(data["created_at"]),
            last_activity=int(data["last_activity"]),
            max_inactivity_ms=int(data["max_inactivity_ms"]),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class SecurityEvent:
    type: str
    timestamp: int
    session_id: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityEvent":
        return cls(
            type=data["type"],
            timestamp=int(data["timestamp"]),
            session_id=data.get("session_id"),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
            details=dict(data.get("details") or {}),
        )


@dataclass
class SessionValidation:
    is_valid: bool
    risk_level: RiskLevel
    reasons: List[str] = field(default_factory=list)
    requires_reauth: bool = False
    device_changed: bool = False
