"""Async client for the browser's DevTools HTTP metadata endpoints."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .errors import BrowserError, TargetNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 5.0


class DevToolsHTTPError(BrowserError):
    pass


class DevToolsHTTP:
    """Thin wrapper over ``/json/*`` on a debug port.

    ``transport`` is passed through to httpx so tests can mount a
    ``httpx.MockTransport`` instead of a live browser.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9222,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": "any-browser-mcp"},
        )

    async def _request(self, method: str, path: str, timeout: float | None = None) -> Any:
        kwargs = {} if timeout is None else {"timeout": timeout}
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise DevToolsHTTPError(f"{method} {self.base_url}{path} failed: {exc}") from exc
        if resp.status_code == 404:
            raise TargetNotFoundError(f"{path}: {resp.text.strip() or 'not found'}")
        if resp.status_code != 200:
            raise DevToolsHTTPError(f"{method} {self.base_url}{path} returned HTTP {resp.status_code}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def version(self, timeout: float | None = None) -> dict:
        """Browser name, protocol version and the browser websocket URL."""
        data = await self._request("GET", "/json/version", timeout)
        if not isinstance(data, dict):
            raise DevToolsHTTPError(f"Unexpected /json/version payload from {self.base_url}")
        return data

    async def is_responding(self, timeout: float = 2.0) -> bool:
        try:
            await self.version(timeout=timeout)
        except BrowserError as exc:
            logger.debug("Metadata endpoint %s not answering: %s", self.base_url, exc)
            return False
        return True

    async def list_targets(self) -> list[dict]:
        """All page-type targets, in the order the browser reports them."""
        data = await self._request("GET", "/json/list")
        return [t for t in data or [] if t.get("type") == "page"]

    async def new_target(self, url: str | None = None) -> dict:
        path = "/json/new"
        if url:
            path += "?" + quote(url, safe=":/?&=%@+,;~")
        # Chrome 111+ rejects GET here; PUT is accepted everywhere.
        return await self._request("PUT", path)

    async def activate(self, target_id: str) -> None:
        await self._request("GET", f"/json/activate/{target_id}")

    async def close_target(self, target_id: str) -> None:
        await self._request("GET", f"/json/close/{target_id}")

    async def aclose(self) -> None:
        await self._client.aclose()
