import json
from pathlib import Path

import httpx
import pytest

from roomrelay.cursor_store import CursorStore
from roomrelay.settings import load_worker_settings
from roomrelay.worker import build_worker
from tests.fakes import RecordingSleep


PING_ITEM = {
    "id": "3",
    "type": "message",
    "message": "ping",
    "mentions": [{"id": 9, "mention_name": "relay"}],
}


class _Backend:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.webhook_bodies: list[dict] = []
        self.notifications: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "hook.test":
            self.webhook_bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"message": "pong", "format": "text"})
        if path.endswith("/history"):
            return httpx.Response(
                200, json={"items": [{"id": "1", "type": "message", "message": "old"}]}
            )
        if path.endswith("/history/latest"):
            assert request.url.params["not-before"] == "1"
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "1", "type": "message", "message": "old"},
                        {"id": "2", "type": "notification", "message": "bot noise"},
                        PING_ITEM,
                    ]
                },
            )
        if path.endswith("/notification"):
            self.notifications.append(json.loads(request.content))
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.mark.anyio
async def test_worker_relays_new_message_and_echoes_reply(tmp_path: Path) -> None:
    settings = load_worker_settings(
        api_key="secret-key",
        room_id="ops",
        sender="Relay",
        target_url="https://hook.test/in",
        chat_url="https://chat.test",
        state_path=tmp_path / "cursor.json",
    )
    backend = _Backend()
    sleep = RecordingSleep()
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        worker = build_worker(settings, http_client=client, sleep=sleep)
        await worker.run(max_polls=1)

    assert [body["id"] for body in backend.webhook_bodies] == ["3"]
    assert backend.webhook_bodies[0] == PING_ITEM
    assert backend.notifications == [
        {"from": "Relay", "message": "pong", "message_format": "text"}
    ]
    chat_requests = [r for r in backend.requests if r.url.host == "chat.test"]
    assert all(r.headers["authorization"] == "Bearer secret-key" for r in chat_requests)
    assert await CursorStore(tmp_path / "cursor.json").get() == "3"
    assert sleep.calls == [5.0]
