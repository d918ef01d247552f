from __future__ import annotations

from dataclasses import dataclass

import anyio
import httpx

from .chat.client_api import HttpChatClient
from .cursor_store import CursorStore
from .logging import bind_run_context, get_logger, mask_secret
from .poller import RateLimitedPoller
from .relay import RelayPipeline, WebhookClient
from .retry import Sleep
from .settings import WorkerSettings

logger = get_logger(__name__)


@dataclass(slots=True)
class Worker:
    chat: HttpChatClient
    webhook: WebhookClient
    poller: RateLimitedPoller
    pipeline: RelayPipeline

    async def run(self, *, max_polls: int | None = None) -> None:
        try:
            await self.poller.run(self.pipeline.handle, max_polls=max_polls)
        finally:
            await self.chat.close()
            await self.webhook.close()


def build_worker(
    settings: WorkerSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
    sleep: Sleep = anyio.sleep,
) -> Worker:
    chat = HttpChatClient(
        settings.api_key,
        base_url=settings.chat_url,
        timeout_s=settings.request_timeout,
        http_client=http_client,
    )
    webhook = WebhookClient(
        settings.target_url,
        timeout_s=settings.request_timeout,
        http_client=http_client,
    )
    poller = RateLimitedPoller(
        chat,
        CursorStore(settings.state_path),
        room_id=settings.room_id,
        poll_interval=settings.poll_interval,
        rate_limit_retries=settings.rate_limit_retries,
        rate_limit_cooldown=settings.rate_limit_cooldown,
        sleep=sleep,
    )
    pipeline = RelayPipeline(
        chat,
        webhook,
        room_id=settings.room_id,
        sender=settings.sender,
        attempts=settings.delivery_attempts,
        delay=settings.delivery_delay,
        sleep=sleep,
    )
    return Worker(chat=chat, webhook=webhook, poller=poller, pipeline=pipeline)


async def run_worker(settings: WorkerSettings) -> None:
    bind_run_context(room_id=settings.room_id, digest=settings.subscription.digest())
    logger.info(
        "worker.starting",
        room_id=settings.room_id,
        sender=settings.sender,
        target_url=settings.target_url,
        key_hint=mask_secret(settings.api_key),
        poll_interval=settings.poll_interval,
        state_path=str(settings.state_path),
    )
    worker = build_worker(settings)
    await worker.run()
