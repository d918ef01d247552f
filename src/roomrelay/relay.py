from __future__ import annotations

from typing import Any

import anyio
import httpx
import msgspec

from .chat.client_api import ChatClient, RateLimited
from .logging import get_logger
from .model import ChatMessage, WebhookReply
from .retry import RetryExhausted, Sleep, retry_call, retry_on

logger = get_logger(__name__)

SUCCESS_STATUSES = range(200, 300)


class DeliveryError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class WebhookClient:
    def __init__(
        self,
        target_url: str,
        *,
        timeout_s: float = 30,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._target_url = target_url
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    @property
    def target_url(self) -> str:
        return self._target_url

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def post(self, payload: dict[str, Any]) -> httpx.Response:
        try:
            resp = await self._http_client.post(self._target_url, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(
                f"webhook request failed: {exc.__class__.__name__}: {exc}"
            ) from exc
        if resp.status_code not in SUCCESS_STATUSES:
            raise DeliveryError(
                f"webhook responded with status {resp.status_code}",
                status=resp.status_code,
            )
        return resp


def decode_reply(content: bytes) -> WebhookReply:
    return msgspec.json.decode(content, type=WebhookReply)


class RelayPipeline:
    """Delivers chat messages to the webhook and echoes its reply into the room.

    Webhook delivery is retried a bounded number of times and is what decides
    whether a message counts as handled. The reply echo is attempted once.
    """

    def __init__(
        self,
        chat: ChatClient,
        webhook: WebhookClient,
        *,
        room_id: str,
        sender: str,
        attempts: int = 4,
        delay: float = 5.0,
        sleep: Sleep = anyio.sleep,
        log: Any = None,
    ) -> None:
        self._chat = chat
        self._webhook = webhook
        self._room_id = room_id
        self._sender = sender
        self._attempts = attempts
        self._delay = delay
        self._sleep = sleep
        self._log = log or logger

    async def deliver(self, message: ChatMessage) -> httpx.Response:
        def on_retry(attempt: int, exc: BaseException) -> None:
            self._log.warning(
                "relay.delivery_retry",
                message_id=message.id,
                attempt=attempt,
                status=getattr(exc, "status", None),
                error=str(exc),
                delay=self._delay,
            )

        payload = message.to_payload()
        self._log.info("relay.delivering", message_id=message.id, text=message.message)
        resp = await retry_call(
            lambda: self._webhook.post(payload),
            attempts=self._attempts,
            delay=self._delay,
            retryable=retry_on(DeliveryError),
            sleep=self._sleep,
            on_retry=on_retry,
        )
        self._log.info("relay.delivered", message_id=message.id, status=resp.status_code)
        return resp

    async def echo_reply(self, message: ChatMessage, reply: WebhookReply) -> bool:
        self._log.info(
            "relay.replying", message_id=message.id, text=reply.text, format=reply.format
        )
        try:
            sent = await self._chat.send(
                self._room_id,
                sender=self._sender,
                text=reply.text,
                message_format=reply.format,
            )
        except RateLimited as exc:
            self._log.error(
                "relay.reply_failed",
                message_id=message.id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return False
        if not sent:
            self._log.error("relay.reply_failed", message_id=message.id)
        return sent

    async def relay(self, message: ChatMessage) -> WebhookReply | None:
        """Deliver one message and echo the reply.

        Raises :class:`RetryExhausted` if the webhook never accepts the message.
        Returns ``None`` when the reply could not be decoded.
        """
        resp = await self.deliver(message)
        try:
            reply = decode_reply(resp.content)
        except msgspec.DecodeError as exc:
            self._log.error(
                "relay.reply_invalid",
                message_id=message.id,
                error=str(exc),
                body=resp.text,
            )
            return None
        await self.echo_reply(message, reply)
        return reply

    async def handle(self, message: ChatMessage) -> bool:
        try:
            await self.relay(message)
        except RetryExhausted as exc:
            self._log.error(
                "relay.delivery_failed",
                message_id=message.id,
                attempts=exc.attempts,
                error=str(exc.last_error),
            )
            return False
        return True
