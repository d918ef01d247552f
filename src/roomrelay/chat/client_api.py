from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx
import msgspec

from ..logging import get_logger
from ..model import ChatMessage

logger = get_logger(__name__)

DEFAULT_RATE_LIMIT_DELAY = 5.0


class RateLimited(Exception):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limited, retry after {retry_after}")
        self.retry_after = float(retry_after)


def retry_after_from_headers(headers: httpx.Headers) -> float | None:
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ChatClient(Protocol):
    async def close(self) -> None: ...

    async def history(
        self, room_id: str, *, max_results: int = 10
    ) -> list[ChatMessage] | None: ...

    async def recent_history(
        self, room_id: str, *, not_before: str | None = None
    ) -> list[ChatMessage] | None: ...

    async def send(
        self,
        room_id: str,
        *,
        sender: str,
        text: str,
        message_format: str = "text",
    ) -> bool: ...


class HttpChatClient:
    """HipChat v2 room API over httpx.

    History calls return every item type in service order; callers decide
    what to relay. Fetch errors are logged and reported as ``None``; HTTP 429
    raises :class:`RateLimited` so the caller can apply its own backoff.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.hipchat.com",
        timeout_s: float = 30,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("chat api key is empty")
        self._base = f"{base_url.rstrip('/')}/v2"
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _room_url(self, room_id: str, suffix: str) -> str:
        return f"{self._base}/room/{quote(room_id, safe='')}/{suffix}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        label: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response | None:
        logger.debug("chat.request", method=label, params=params, payload=json)
        try:
            resp = await self._http_client.request(
                method, url, params=params, json=json, headers=self._headers
            )
        except httpx.HTTPError as exc:
            logger.error(
                "chat.network_error",
                method=label,
                url=url,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        if resp.status_code == 429:
            retry_after = retry_after_from_headers(resp.headers)
            retry_after = DEFAULT_RATE_LIMIT_DELAY if retry_after is None else retry_after
            logger.warning(
                "chat.rate_limited",
                method=label,
                status=resp.status_code,
                retry_after=retry_after,
            )
            raise RateLimited(retry_after)

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "chat.http_error",
                method=label,
                status=resp.status_code,
                url=url,
                error=str(exc),
                body=resp.text,
            )
            return None
        return resp

    def _decode_items(self, *, label: str, resp: httpx.Response) -> list[ChatMessage] | None:
        try:
            payload = resp.json()
        except ValueError as exc:
            logger.error(
                "chat.bad_response",
                method=label,
                status=resp.status_code,
                error=str(exc),
                body=resp.text,
            )
            return None
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            logger.error("chat.invalid_payload", method=label, payload=payload)
            return None
        try:
            messages = [ChatMessage.from_item(item) for item in items]
        except msgspec.ValidationError as exc:
            logger.error(
                "chat.decode_error",
                method=label,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        return messages

    async def history(
        self, room_id: str, *, max_results: int = 10
    ) -> list[ChatMessage] | None:
        resp = await self._request(
            "GET",
            self._room_url(room_id, "history"),
            label="history",
            params={"max-results": max_results},
        )
        if resp is None:
            return None
        return self._decode_items(label="history", resp=resp)

    async def recent_history(
        self, room_id: str, *, not_before: str | None = None
    ) -> list[ChatMessage] | None:
        params: dict[str, Any] = {}
        if not_before is not None:
            params["not-before"] = not_before
        resp = await self._request(
            "GET",
            self._room_url(room_id, "history/latest"),
            label="recent_history",
            params=params,
        )
        if resp is None:
            return None
        return self._decode_items(label="recent_history", resp=resp)

    async def send(
        self,
        room_id: str,
        *,
        sender: str,
        text: str,
        message_format: str = "text",
    ) -> bool:
        resp = await self._request(
            "POST",
            self._room_url(room_id, "notification"),
            label="send",
            json={"from": sender, "message": text, "message_format": message_format},
        )
        return resp is not None
