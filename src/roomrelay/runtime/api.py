from __future__ import annotations

from typing import Any, Protocol

from ..model import WorkerInfo


class WorkerConflict(RuntimeError):
    """A worker with the same name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"worker {name!r} already exists")
        self.name = name


class RuntimeUnavailable(RuntimeError):
    """The container runtime could not be reached or rejected a request."""


class WorkerRuntime(Protocol):
    async def create(
        self,
        *,
        name: str,
        image: str,
        environment: dict[str, str],
        labels: dict[str, str],
        restart_policy: dict[str, Any],
    ) -> WorkerInfo: ...

    async def start(self, worker_id: str) -> None: ...

    async def list_all(self) -> list[WorkerInfo]: ...

    async def remove(self, worker_id: str) -> bool: ...

    async def logs(self, worker_id: str, *, tail: int) -> str | None: ...
