from __future__ import annotations

from typing import Any, AsyncGenerator, Iterable

import httpx

from storefront_auth.logging import get_logger

logger = get_logger(__name__)

# Endpoints that must never carry the access token or trigger a refresh
AUTH_ENDPOINT_SUFFIXES = ("/auth/login", "/auth/register", "/auth/refresh")


class TokenRefreshAuth(httpx.Auth):
    """httpx auth flow that attaches the access token and recovers from one 401.

    On a 401 the token manager refreshes (joining any refresh already in
    flight) and the request is replayed once with the new token. A second
    401 is returned to the caller unchanged.
    """

    def __init__(
        self,
        token_manager: Any,
        token_store: Any,
        *,
        excluded_suffixes: Iterable[str] = AUTH_ENDPOINT_SUFFIXES,
    ) -> None:
        self.token_manager = token_manager
        self.token_store = token_store
        self.excluded_suffixes = tuple(excluded_suffixes)

    def _is_auth_endpoint(self, request: httpx.Request) -> bool:
        path = request.url.path.rstrip("/")
        return any(path.endswith(suffix) for suffix in self.excluded_suffixes)

    def _apply_token(self, request: httpx.Request) -> bool:
        token = self.token_store.get_access_token()
        if not token:
            return False
        request.headers["Authorization"] = f"Bearer {token}"
        return True

    def sync_auth_flow(self, request: httpx.Request):
        raise RuntimeError("TokenRefreshAuth requires httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        if self._is_auth_endpoint(request):
            yield request
            return

        self._apply_token(request)
        response = yield request
        if response.status_code != 401:
            return

        logger.info("request_unauthorized_refreshing", path=request.url.path)
        if not await self.token_manager.refresh_token():
            return
        if not self._apply_token(request):
            return
        yield request
