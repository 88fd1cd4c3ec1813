"""Thin client for the chat REST collaborator.

Authoritative writes (send, read, block, settings) go through these calls,
never through the push channel. Responses are returned as decoded JSON.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import quote

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class ChatApiError(Exception):
    """Non-2xx response or transport failure talking to the REST API."""

    def __init__(self, status_code: int | None, detail: str):
        super().__init__(f"{status_code}: {detail}" if status_code else detail)
        self.status_code = status_code
        self.detail = detail


class ChatApi:
    """REST endpoints under `/threads`.

    Pass an existing `httpx.AsyncClient` to share a connection pool (or a
    MockTransport-backed client in tests); otherwise one is created and owned
    by this instance.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        http: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self._token = token
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            timeout=settings.API_TIMEOUT_SECONDS if timeout is None else timeout
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "ChatApi":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _thread_url(self, thread_id: str, suffix: str = "") -> str:
        return f"{self.base_url}/threads/{quote(str(thread_id), safe='')}{suffix}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Chat API %s %s failed: %s", method, url, exc)
            raise ChatApiError(None, str(exc)) from exc
        if response.is_error:
            detail = response.text[:200]
            logger.warning(
                "Chat API %s %s -> %s: %s", method, url, response.status_code, detail
            )
            raise ChatApiError(response.status_code, detail)
        if not response.content:
            return {}
        return response.json()

    async def list_threads(self) -> List[Dict[str, Any]]:
        return await self._request("GET", f"{self.base_url}/threads")

    async def get_messages(
        self, thread_id: str, cursor: str | None = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if limit:
            params["limit"] = limit
        return await self._request("GET", self._thread_url(thread_id, "/messages"), params=params)

    async def send_message(self, thread_id: str, text: str) -> Dict[str, Any]:
        """POST a message; the response carries the server-assigned id."""
        result = await self._request(
            "POST", self._thread_url(thread_id, "/messages"), json={"text": text}
        )
        if not isinstance(result, dict) or not result.get("id"):
            raise ChatApiError(None, "send_message response missing id")
        return result

    async def mark_read(self, thread_id: str) -> Dict[str, Any]:
        return await self._request("POST", self._thread_url(thread_id, "/read"))

    async def block(self, thread_id: str) -> Dict[str, Any]:
        return await self._request("POST", self._thread_url(thread_id, "/block"))

    async def unblock(self, thread_id: str) -> Dict[str, Any]:
        return await self._request("POST", self._thread_url(thread_id, "/unblock"))

    async def update_settings(
        self, thread_id: str, *, disappearing_after_hours: int | None = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if disappearing_after_hours is not None:
            if disappearing_after_hours < 0:
                raise ValueError("disappearing_after_hours must be >= 0")
            body["disappearingAfterHours"] = disappearing_after_hours
        return await self._request("POST", self._thread_url(thread_id, "/settings"), json=body)
