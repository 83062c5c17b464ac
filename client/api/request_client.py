import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Operator identity header understood by the engine
USER_HEADER = "Comfy-User"
NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


class RequestClient:
    """Builds engine URLs and issues one-off HTTP requests.

    Every call opens its own ``httpx.AsyncClient``; nothing is shared between
    calls. Responses are returned raw, status codes are for the caller to
    interpret, and nothing is retried here.
    """

    def __init__(self, api_root: str, user: str = "", timeout: float = 30.0):
        url = httpx.URL(api_root)
        self.api_host = url.netloc.decode("ascii")
        self.secure = url.scheme in ("https", "wss")
        self.api_base = url.path.rstrip("/")
        self.user = user
        self.timeout = timeout

    @property
    def http_root(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.api_host}{self.api_base}"

    def api_url(self, route: str) -> str:
        return f"{self.http_root}/api{route}"

    def internal_url(self, route: str) -> str:
        return f"{self.http_root}/internal{route}"

    def file_url(self, route: str) -> str:
        return f"{self.http_root}{route}"

    def ws_url(self, client_id: str | None = None) -> str:
        """Live channel URL; ``client_id`` resumes an existing session."""
        scheme = "wss" if self.secure else "ws"
        url = f"{scheme}://{self.api_host}{self.api_base}/ws"
        if client_id:
            url += "?" + str(httpx.QueryParams({"clientId": client_id}))
        return url

    def _headers(self, headers: dict[str, str] | None) -> dict[str, str]:
        merged = {**NO_CACHE_HEADERS, **(headers or {})}
        merged[USER_HEADER] = self.user
        return merged

    async def fetch_api(
        self,
        route: str,
        method: str = "GET",
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        return await self._request(self.api_url(route), method, json, params, headers)

    async def fetch_internal(
        self,
        route: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        return await self._request(self.internal_url(route), method, None, params, None)

    async def _request(
        self,
        url: str,
        method: str,
        json: Any,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        logger.debug(f"{method} {url}")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(headers),
            )
