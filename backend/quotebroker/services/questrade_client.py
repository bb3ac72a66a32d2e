"""
Questrade REST/OAuth client.

Thin async wrapper over httpx. It knows the provider's URLs and payload shapes
and nothing about caching, persistence or identities; callers pass the access
token and API server they obtained from the token manager.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from quotebroker.config import settings
from quotebroker.services.errors import ErrorCode, ProviderAPIError, QuoteBrokerError, TokenError

logger = logging.getLogger(__name__)


def normalize_api_server(api_server: Optional[str]) -> Optional[str]:
    """Strip any trailing slash and default the scheme to https://"""
    if not api_server:
        return api_server
    server = api_server.strip().rstrip("/")
    if not server.startswith("http://") and not server.startswith("https://"):
        server = f"https://{server}"
    return server


class ProviderHTTPError(Exception):
    """Provider answered with a non-2xx status, or could not be reached (status None)."""

    def __init__(self, status: Optional[int], body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = body or ""
        super().__init__(message or f"Questrade API error (status {status}): {self.body[:200]}")

    @property
    def provider_message(self) -> str:
        return self.body[:500]


class QuestradeClient:
    def __init__(self, auth_url: Optional[str] = None, oauth_timeout: Optional[float] = None,
                 api_timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.auth_url = (auth_url or settings.QUESTRADE_AUTH_URL).rstrip("/")
        self.oauth_timeout = oauth_timeout or settings.OAUTH_TIMEOUT_SECONDS
        self.api_timeout = api_timeout or settings.API_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _send(self, method: str, url: str, timeout: float, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client(timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Questrade request to {url} failed: {type(e).__name__}: {e}")
            raise ProviderHTTPError(None, str(e), message=f"Could not reach Questrade: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"Questrade {method} {url} returned {response.status_code}")
            raise ProviderHTTPError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderHTTPError(response.status_code, response.text,
                                    message="Questrade returned a non-JSON response") from e

    async def _get(self, access_token: str, api_server: str, path: str,
                   params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{normalize_api_server(api_server)}{path}"
        return await self._send(
            "GET",
            url,
            self.api_timeout,
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def exchange_refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new token pair.

        Returns the provider payload: access_token, refresh_token (rotated),
        api_server, expires_in, token_type.
        """
        return await self._send(
            "POST",
            f"{self.auth_url}/oauth2/token",
            self.oauth_timeout,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    async def search_symbols(self, access_token: str, api_server: str, prefix: str) -> List[Dict[str, Any]]:
        data = await self._get(access_token, api_server, "/v1/symbols/search", {"prefix": prefix})
        return data.get("symbols") or []

    async def get_symbol(self, access_token: str, api_server: str, symbol_id: int) -> Optional[Dict[str, Any]]:
        data = await self._get(access_token, api_server, f"/v1/symbols/{symbol_id}")
        symbols = data.get("symbols") or []
        return symbols[0] if symbols else None

    async def get_quotes(self, access_token: str, api_server: str, symbol_ids: Iterable[int]) -> List[Dict[str, Any]]:
        ids = ",".join(str(i) for i in symbol_ids)
        data = await self._get(access_token, api_server, "/v1/markets/quotes", {"ids": ids})
        return data.get("quotes") or []

    async def get_stream_port(self, access_token: str, api_server: str, symbol_ids: Iterable[int]) -> int:
        ids = ",".join(str(i) for i in symbol_ids)
        data = await self._get(
            access_token,
            api_server,
            "/v1/markets/quotes",
            {"ids": ids, "stream": "true", "mode": "WebSocket"},
        )
        port = data.get("streamPort")
        if not port:
            raise ProviderHTTPError(200, str(data)[:200], message="No streamPort in response from Questrade")
        return int(port)

    async def get_server_time(self, access_token: str, api_server: str) -> Dict[str, Any]:
        return await self._get(access_token, api_server, "/v1/time")


def as_broker_error(error: ProviderHTTPError, context: str) -> QuoteBrokerError:
    """Map a failed provider call (other than the OAuth exchange) to a typed error."""
    if error.status == 401:
        return TokenError(f"{context}: access token rejected by Questrade", code=ErrorCode.TOKEN_INVALID)
    return ProviderAPIError(f"{context}: {error}", upstream_status=error.status)
