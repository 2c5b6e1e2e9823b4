from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from storefront_auth.logging import get_logger, sanitize_error_message
from storefront_auth.service.errors import RefreshRejectedError, TokenRefreshError
from storefront_auth.storage.models import finite_int

logger = get_logger(__name__)


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    token_expiry: Any = None
    expires_in: Optional[int] = None
    customer: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class RefreshClient:
    """Exchanges a refresh token for a new pair at the backend refresh endpoint.

    The refresh token is sent as a Bearer credential on a POST. Responses may
    come bare (``{access_token, refresh_token, token_expiry}``) or wrapped in
    ``{success, data, message}``.
    """

    def __init__(
        self,
        base_url: str,
        refresh_path: str = "/api/v1/auth/refresh",
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.refresh_path = refresh_path if refresh_path.startswith("/") else f"/{refresh_path}"
        self.timeout = timeout
        self._client = client
        self.logger = logger

    @property
    def refresh_url(self) -> str:
        return f"{self.base_url}{self.refresh_path}"

    async def refresh(self, refresh_token: str) -> RefreshResult:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {refresh_token}",
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.refresh_url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                    response = await client.post(self.refresh_url, headers=headers)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                "refresh request failed", detail={"error": sanitize_error_message(str(exc))}
            ) from exc

        if response.is_error:
            message = _error_message(response)
            raise RefreshRejectedError(
                message,
                status_code=response.status_code,
                detail={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TokenRefreshError("refresh response is not JSON") from exc
        return self._parse(body)

    @staticmethod
    def _parse(body: Any) -> RefreshResult:
        if not isinstance(body, dict):
            raise TokenRefreshError("refresh response has unexpected shape")
        if body.get("success") is False:
            raise RefreshRejectedError(body.get("message") or "refresh rejected", status_code=401)
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise TokenRefreshError("refresh response is missing tokens")
        customer = data.get("customer")
        if not isinstance(customer, dict) or customer.get("id") is None:
            customer = None
        return RefreshResult(
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=data.get("token_expiry"),
            expires_in=finite_int(data.get("expires_in")),
            customer=customer,
            raw=body,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    message = payload.get("message") if isinstance(payload, dict) else None
    if message:
        return sanitize_error_message(str(message))
    return f"HTTP {response.status_code}: {response.reason_phrase}"
