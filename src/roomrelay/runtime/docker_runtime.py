from __future__ import annotations

import re
from datetime import datetime
from functools import partial
from typing import Any, Callable, TypeVar

import anyio
import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..logging import get_logger
from ..model import WorkerInfo
from .api import RuntimeUnavailable, WorkerConflict

logger = get_logger(__name__)

T = TypeVar("T")

# Engine timestamps carry nanoseconds, e.g. 2024-05-01T10:00:00.123456789Z.
_FRACTION_RE = re.compile(r"\.(\d{1,6})\d*")


def parse_created(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    text = _FRACTION_RE.sub(r".\1", raw.replace("Z", "+00:00"), count=1)
    try:
        created = datetime.fromisoformat(text)
    except ValueError:
        return None
    return created if created.tzinfo is not None else None


def _worker_info(container: Any) -> WorkerInfo:
    labels = getattr(container, "labels", None) or {}
    attrs = getattr(container, "attrs", None) or {}
    return WorkerInfo(
        id=container.id,
        name=container.name,
        status=container.status,
        labels=dict(labels),
        created_at=parse_created(attrs.get("Created")),
    )


class DockerRuntime:
    """Worker runtime backed by the Docker Engine API.

    The SDK is blocking, so every call is pushed to a worker thread.
    """

    def __init__(
        self,
        client: Any | None = None,
        *,
        timeout_s: float = 10,
        network: str | None = None,
    ) -> None:
        self._client = client
        self._timeout_s = timeout_s
        self._network = network

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self._timeout_s)
            except DockerException as exc:
                raise RuntimeUnavailable(f"docker is not reachable: {exc}") from exc
        return self._client

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await anyio.to_thread.run_sync(partial(func, *args, **kwargs))
        except (WorkerConflict, RuntimeUnavailable):
            raise
        except DockerException as exc:
            logger.error(
                "docker.request_failed",
                operation=getattr(func, "__name__", None),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise RuntimeUnavailable(str(exc)) from exc

    def _create_sync(
        self,
        *,
        name: str,
        image: str,
        environment: dict[str, str],
        labels: dict[str, str],
        restart_policy: dict[str, Any],
    ) -> WorkerInfo:
        client = self._docker()
        kwargs: dict[str, Any] = {
            "name": name,
            "detach": True,
            "environment": environment,
            "labels": labels,
            "restart_policy": restart_policy,
        }
        if self._network is not None:
            kwargs["network"] = self._network
        try:
            container = self._create_or_conflict(client, image, name, kwargs)
        except ImageNotFound:
            logger.info("docker.pulling_image", image=image)
            client.images.pull(image)
            container = self._create_or_conflict(client, image, name, kwargs)
        return _worker_info(container)

    def _create_or_conflict(
        self, client: Any, image: str, name: str, kwargs: dict[str, Any]
    ) -> Any:
        try:
            return client.containers.create(image, **kwargs)
        except APIError as exc:
            if exc.status_code == 409:
                raise WorkerConflict(name) from exc
            raise

    def _start_sync(self, worker_id: str) -> None:
        self._docker().containers.get(worker_id).start()

    def _list_sync(self) -> list[WorkerInfo]:
        containers = self._docker().containers.list(all=True, ignore_removed=True)
        return [_worker_info(container) for container in containers]

    def _remove_sync(self, worker_id: str) -> bool:
        try:
            container = self._docker().containers.get(worker_id)
            container.remove(force=True)
        except NotFound:
            return False
        return True

    def _logs_sync(self, worker_id: str, tail: int) -> str | None:
        try:
            container = self._docker().containers.get(worker_id)
        except NotFound:
            return None
        raw = container.logs(stdout=True, stderr=True, tail=tail)
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    async def create(
        self,
        *,
        name: str,
        image: str,
        environment: dict[str, str],
        labels: dict[str, str],
        restart_policy: dict[str, Any],
    ) -> WorkerInfo:
        return await self._call(
            self._create_sync,
            name=name,
            image=image,
            environment=environment,
            labels=labels,
            restart_policy=restart_policy,
        )

    async def start(self, worker_id: str) -> None:
        await self._call(self._start_sync, worker_id)

    async def list_all(self) -> list[WorkerInfo]:
        return await self._call(self._list_sync)

    async def remove(self, worker_id: str) -> bool:
        return await self._call(self._remove_sync, worker_id)

    async def logs(self, worker_id: str, *, tail: int) -> str | None:
        return await self._call(self._logs_sync, worker_id, tail)
