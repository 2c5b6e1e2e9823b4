from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for token and session lifecycle errors.

    Each error carries a stable ``error_code`` so hosts can branch on it
    without parsing messages. The token manager converts these into boolean
    results and events; they surface to callers only from the refresh client
    and from construction-time misconfiguration.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """The session can no longer be renewed; the user must sign in again."""
    error_code = "session_expired"

    def __init__(self, message: str = "Your session has expired. Please sign in again.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenCorruptedError(ServiceError):
    """A stored token is structurally malformed or its payload is undecodable."""
    status_code = 400
    error_code = "token_corrupted"


class DeviceRiskError(ServiceError):
    """The current device was assessed as high risk."""
    status_code = 403
    error_code = "device_risk_high"


class TokenRefreshError(ServiceError):
    """Network or server failure while exchanging the refresh token."""
    status_code = 503
    error_code = "refresh_failed"


class RefreshRejectedError(TokenRefreshError):
    """The backend answered the refresh request with a non-success status."""
    status_code = 401
    error_code = "refresh_rejected"


class NoRefreshTokenError(TokenRefreshError):
    """No usable refresh token is stored."""
    status_code = 401
    error_code = "no_refresh_token"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionExpiredError",
    "TokenCorruptedError",
    "DeviceRiskError",
    "TokenRefreshError",
    "RefreshRejectedError",
    "NoRefreshTokenError",
]
