from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio

from .chat.client_api import ChatClient, RateLimited
from .cursor_store import CursorStore
from .logging import get_logger
from .model import ChatMessage
from .retry import Sleep, retry_call, retry_on

logger = get_logger(__name__)

T = TypeVar("T")

BOOTSTRAP_WINDOW = 10

MessageHandler = Callable[[ChatMessage], Awaitable[bool]]


class RateLimitedPoller:
    """Fetches room messages newer than the cursor, oldest first.

    The cursor only moves after the handler reports a message as handled, and
    every move is persisted before the next message is looked at. Items that
    are not plain room messages (notifications, guest access events) are never
    handed to the handler; the cursor steps over them.
    """

    def __init__(
        self,
        chat: ChatClient,
        store: CursorStore,
        *,
        room_id: str,
        poll_interval: float,
        rate_limit_retries: int = 5,
        rate_limit_cooldown: float = 30.0,
        sleep: Sleep = anyio.sleep,
        log: Any = None,
    ) -> None:
        self._chat = chat
        self._store = store
        self._room_id = room_id
        self._poll_interval = poll_interval
        self._rate_limit_retries = rate_limit_retries
        self._rate_limit_cooldown = rate_limit_cooldown
        self._sleep = sleep
        self._log = log or logger
        self._cursor: str | None = None

    @property
    def cursor(self) -> str | None:
        return self._cursor

    async def with_backoff(
        self, label: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        def on_retry(attempt: int, exc: BaseException) -> None:
            self._log.warning(
                "poller.backoff",
                operation=label,
                attempt=attempt,
                cooldown=self._rate_limit_cooldown,
                retry_after=getattr(exc, "retry_after", None),
            )

        return await retry_call(
            operation,
            attempts=self._rate_limit_retries + 1,
            delay=self._rate_limit_cooldown,
            retryable=retry_on(RateLimited),
            sleep=self._sleep,
            on_retry=on_retry,
        )

    async def bootstrap(self) -> str | None:
        stored = await self._store.get()
        if stored is not None:
            self._cursor = stored
            self._log.info("poller.resumed", cursor=stored)
            return stored

        while True:
            messages = await self.with_backoff(
                "history",
                lambda: self._chat.history(self._room_id, max_results=BOOTSTRAP_WINDOW),
            )
            if messages is not None:
                break
            self._log.warning("poller.bootstrap_failed", room_id=self._room_id)
            await self._sleep(self._poll_interval)

        if not messages:
            self._log.info("poller.bootstrap_empty_room", room_id=self._room_id)
            return None
        # Any item type works as a "not-before" boundary.
        seed = messages[-1].id
        await self._store.set(seed)
        self._cursor = seed
        self._log.info("poller.bootstrapped", cursor=seed)
        return seed

    async def next_batch(self) -> list[ChatMessage] | None:
        cursor = self._cursor
        if cursor is None:
            # Room was empty at bootstrap, so everything present now is new.
            return await self._chat.recent_history(self._room_id)
        messages = await self._chat.recent_history(self._room_id, not_before=cursor)
        if messages is None:
            return None
        if not messages:
            self._log.warning("poller.boundary_missing", cursor=cursor)
            return []
        boundary = messages[0]
        if boundary.id != cursor:
            self._log.warning(
                "poller.boundary_mismatch", cursor=cursor, boundary=boundary.id
            )
        return messages[1:]

    async def advance(self, message_id: str) -> None:
        await self._store.set(message_id)
        self._cursor = message_id
        self._log.debug("poller.cursor_advanced", cursor=message_id)

    async def poll_once(self, handle: MessageHandler) -> int:
        """Fetch one batch and hand it over in order; returns how many were handled."""
        batch = await self.with_backoff("recent_history", self.next_batch)
        if batch is None:
            self._log.warning("poller.fetch_failed", room_id=self._room_id)
            return 0
        self._log.debug("poller.batch", size=len(batch), cursor=self._cursor)
        handled = 0
        for index, message in enumerate(batch):
            if not message.is_message:
                self._log.debug(
                    "poller.skipped", message_id=message.id, item_type=message.type
                )
                await self.advance(message.id)
                continue
            if not await handle(message):
                self._log.warning(
                    "poller.halted",
                    message_id=message.id,
                    cursor=self._cursor,
                    remaining=len(batch) - index,
                )
                break
            await self.advance(message.id)
            handled += 1
        return handled

    async def run(self, handle: MessageHandler, *, max_polls: int | None = None) -> None:
        """Poll forever (or ``max_polls`` times).

        Raises :class:`RetryExhausted` once rate limiting outlasts the backoff
        budget; the worker treats that as fatal.
        """
        await self.bootstrap()
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            self._log.debug("poller.poll", room_id=self._room_id, cursor=self._cursor)
            await self.poll_once(handle)
            await self._sleep(self._poll_interval)


__all__ = ["MessageHandler", "RateLimitedPoller"]
