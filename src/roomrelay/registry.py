from __future__ import annotations

from typing import Any

from .labels import decode_labels, is_managed
from .logging import get_logger
from .model import Subscription, WorkerInfo
from .runtime.api import WorkerRuntime

logger = get_logger(__name__)

LIVE_STATUSES = frozenset({"created", "running", "restarting"})


def is_live(info: WorkerInfo) -> bool:
    """Running, restarting, or created and possibly about to start."""
    return info.status in LIVE_STATUSES


class SubscriptionRegistry:
    """Active subscriptions, read back from the labels of runtime workers.

    There is no other record: every call lists the runtime again.
    """

    def __init__(self, runtime: WorkerRuntime, *, log: Any = None) -> None:
        self._runtime = runtime
        self._log = log or logger

    async def instances(self) -> list[tuple[WorkerInfo, Subscription]]:
        found: list[tuple[WorkerInfo, Subscription]] = []
        for info in await self._runtime.list_all():
            if not is_managed(info.labels):
                continue
            subscription = decode_labels(info.labels)
            if subscription is None:
                self._log.warning(
                    "registry.malformed_labels", worker=info.name, worker_id=info.id
                )
                continue
            found.append((info, subscription))
        # Live workers first so a leftover exited copy never shadows them.
        found.sort(key=lambda item: (not is_live(item[0]), not item[0].running))
        return found

    async def find_all(self, subscription: Subscription) -> list[WorkerInfo]:
        return [
            info for info, candidate in await self.instances() if candidate == subscription
        ]

    async def find(self, subscription: Subscription) -> WorkerInfo | None:
        for info, candidate in await self.instances():
            if candidate == subscription:
                return info
        return None

    async def all_active(self) -> list[Subscription]:
        active: list[Subscription] = []
        for info, subscription in await self.instances():
            if is_live(info) and subscription not in active:
                active.append(subscription)
        return active
