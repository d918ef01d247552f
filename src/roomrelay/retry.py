from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
OnRetry = Callable[[int, BaseException], None]


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    retryable: Callable[[BaseException], bool],
    sleep: Sleep = anyio.sleep,
    on_retry: OnRetry | None = None,
) -> T:
    """Run ``operation`` up to ``attempts`` times with a fixed delay in between.

    Only errors accepted by ``retryable`` are retried; anything else propagates
    as is. When every attempt fails, :class:`RetryExhausted` is raised with the
    last error attached.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not retryable(exc):
                raise
            if attempt >= attempts:
                raise RetryExhausted(attempt, exc) from exc
            if on_retry is not None:
                on_retry(attempt, exc)
            if delay > 0:
                await sleep(delay)


def retry_on(*types: type[BaseException]) -> Callable[[BaseException], bool]:
    def predicate(exc: BaseException) -> bool:
        return isinstance(exc, types)

    return predicate
