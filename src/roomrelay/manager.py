from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import anyio

from .constants import ENV_PREFIX, WORKER_NAME_PREFIX
from .labels import encode_labels
from .logging import get_logger
from .model import Subscription, WorkerInfo
from .registry import SubscriptionRegistry, is_live
from .runtime.api import WorkerConflict, WorkerRuntime
from .settings import ManagerSettings

logger = get_logger(__name__)


def worker_name(subscription: Subscription) -> str:
    return f"{WORKER_NAME_PREFIX}-{subscription.digest()}"


def worker_environment(
    subscription: Subscription,
    *,
    chat_url: str,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    env = dict(extra or {})
    for name, value in subscription.fields().items():
        env[f"{ENV_PREFIX}{name.upper()}"] = value
    env[f"{ENV_PREFIX}CHAT_URL"] = chat_url
    return env


class LifecycleManager:
    """Keeps at most one live worker per subscription.

    Starts are serialized per subscription inside this process. Across
    processes the deterministic worker name makes the runtime reject a second
    create, and the loser reports ``False``.

    A worker still in ``created`` blocks a new start while another manager may
    be about to start it. Once it is older than ``stale_created_after``
    seconds its creator is assumed dead and the worker is replaced.
    """

    def __init__(
        self,
        runtime: WorkerRuntime,
        *,
        image: str,
        chat_url: str,
        restart_retries: int = 5,
        log_tail: int = 100,
        stale_created_after: float = 60.0,
        worker_env: dict[str, str] | None = None,
        registry: SubscriptionRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
        log: Any = None,
    ) -> None:
        self._runtime = runtime
        self._image = image
        self._chat_url = chat_url
        self._restart_retries = restart_retries
        self._log_tail = log_tail
        self._stale_created_after = stale_created_after
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._worker_env = dict(worker_env or {})
        self._registry = registry or SubscriptionRegistry(runtime)
        self._log = log or logger
        self._locks: dict[Subscription, anyio.Lock] = {}

    @classmethod
    def from_settings(
        cls, runtime: WorkerRuntime, settings: ManagerSettings
    ) -> LifecycleManager:
        return cls(
            runtime,
            image=settings.image,
            chat_url=settings.chat_url,
            restart_retries=settings.restart_retries,
            log_tail=settings.log_tail,
            stale_created_after=settings.stale_created_after,
            worker_env=settings.worker_env,
        )

    def _lock_for(self, subscription: Subscription) -> anyio.Lock:
        lock = self._locks.get(subscription)
        if lock is None:
            lock = anyio.Lock()
            self._locks[subscription] = lock
        return lock

    def _blocks_start(self, info: WorkerInfo) -> bool:
        if not is_live(info):
            return False
        if info.status != "created" or info.created_at is None:
            return True
        age = (self._clock() - info.created_at).total_seconds()
        return age < self._stale_created_after

    def _restart_policy(self) -> dict[str, Any]:
        return {"Name": "on-failure", "MaximumRetryCount": self._restart_retries}

    async def start(self, subscription: Subscription) -> bool:
        """Returns ``True`` only when this call brought a worker up."""
        digest = subscription.digest()
        async with self._lock_for(subscription):
            existing = await self._registry.find(subscription)
            if existing is not None:
                if self._blocks_start(existing):
                    self._log.info(
                        "manager.already_running",
                        digest=digest,
                        worker=existing.name,
                        status=existing.status,
                    )
                    return False
                self._log.info(
                    "manager.replacing_stopped",
                    digest=digest,
                    worker=existing.name,
                    status=existing.status,
                )
                await self._runtime.remove(existing.id)

            name = worker_name(subscription)
            try:
                info = await self._runtime.create(
                    name=name,
                    image=self._image,
                    environment=worker_environment(
                        subscription, chat_url=self._chat_url, extra=self._worker_env
                    ),
                    labels=encode_labels(subscription),
                    restart_policy=self._restart_policy(),
                )
            except WorkerConflict:
                self._log.info("manager.start_conflict", digest=digest, worker=name)
                return False
            try:
                await self._runtime.start(info.id)
            except Exception:
                self._log.error("manager.start_failed", digest=digest, worker=name)
                await self._runtime.remove(info.id)
                raise
            self._log.info(
                "manager.started",
                digest=digest,
                worker=name,
                worker_id=info.id,
                room_id=subscription.room_id,
                target_url=subscription.target_url,
            )
            return True

    async def stop(self, subscription: Subscription) -> bool:
        digest = subscription.digest()
        async with self._lock_for(subscription):
            matches = await self._registry.find_all(subscription)
            if not matches:
                self._log.info("manager.not_found", digest=digest)
                return False
            stopped = False
            for info in matches:
                removed = await self._runtime.remove(info.id)
                stopped = stopped or removed
                self._log.info(
                    "manager.stopped",
                    digest=digest,
                    worker=info.name,
                    worker_id=info.id,
                    removed=removed,
                )
            return stopped

    async def is_running(self, subscription: Subscription) -> bool:
        info = await self._registry.find(subscription)
        return info is not None and info.running

    async def recent_logs(self, subscription: Subscription) -> str | None:
        info = await self._registry.find(subscription)
        if info is None:
            return None
        return await self._runtime.logs(info.id, tail=self._log_tail)

    async def list_active(self) -> list[Subscription]:
        return await self._registry.all_active()
