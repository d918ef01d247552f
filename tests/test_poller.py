from pathlib import Path

import pytest

from roomrelay.chat.client_api import RateLimited
from roomrelay.cursor_store import CursorStore
from roomrelay.model import ChatMessage
from roomrelay.poller import RateLimitedPoller
from roomrelay.retry import RetryExhausted
from tests.fakes import FakeChat, RecordingSleep, msg, note


def _poller(
    chat: FakeChat,
    store: CursorStore,
    sleep: RecordingSleep,
    *,
    retries: int = 3,
) -> RateLimitedPoller:
    return RateLimitedPoller(
        chat,
        store,
        room_id="room",
        poll_interval=5,
        rate_limit_retries=retries,
        rate_limit_cooldown=30,
        sleep=sleep,
    )


class _Handler:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.seen: list[str] = []

    async def __call__(self, message: ChatMessage) -> bool:
        self.seen.append(message.id)
        return message.id not in self.fail_on


@pytest.mark.anyio
async def test_bootstrap_seeds_cursor_from_latest_message(tmp_path: Path) -> None:
    chat = FakeChat(history=[msg("1"), msg("2"), msg("3")])
    store = CursorStore(tmp_path / "cursor.json")
    poller = _poller(chat, store, RecordingSleep())

    assert await poller.bootstrap() == "3"
    assert poller.cursor == "3"
    assert await store.get() == "3"
    assert chat.history_calls == [10]


@pytest.mark.anyio
async def test_restart_with_persisted_cursor_skips_bootstrap(tmp_path: Path) -> None:
    store = CursorStore(tmp_path / "cursor.json")
    await store.set("42")
    chat = FakeChat(history=[msg("99")], batches=[[msg("42"), msg("43")]])
    handler = _Handler()
    poller = _poller(chat, store, RecordingSleep())

    await poller.run(handler, max_polls=1)

    assert chat.history_calls == []
    assert chat.recent_calls[0] == "42"
    assert handler.seen == ["43"]
    assert await store.get() == "43"


@pytest.mark.anyio
async def test_boundary_message_is_stripped_and_order_kept(tmp_path: Path) -> None:
    chat = FakeChat(history=[msg("10")], batches=[[msg("10"), msg("11"), msg("12")]])
    poller = _poller(chat, CursorStore(tmp_path / "c.json"), RecordingSleep())
    await poller.bootstrap()

    batch = await poller.next_batch()

    assert [m.id for m in batch] == ["11", "12"]


@pytest.mark.anyio
async def test_cursor_stops_before_failed_message(tmp_path: Path) -> None:
    chat = FakeChat(
        history=[msg("1")],
        batches=[
            [msg("1"), msg("2"), msg("3"), msg("4")],
            [msg("2"), msg("3"), msg("4")],
        ],
    )
    store = CursorStore(tmp_path / "c.json")
    handler = _Handler(fail_on={"3"})
    sleep = RecordingSleep()
    poller = _poller(chat, store, sleep)

    await poller.run(handler, max_polls=1)

    assert handler.seen == ["2", "3"]
    assert poller.cursor == "2"
    assert await store.get() == "2"

    handler.fail_on.clear()
    await poller.poll_once(handler)

    assert chat.recent_calls == ["1", "2"]
    assert handler.seen == ["2", "3", "3", "4"]
    assert await store.get() == "4"
    assert sleep.calls == [5]


@pytest.mark.anyio
async def test_rate_limit_retries_same_batch(tmp_path: Path) -> None:
    chat = FakeChat(
        history=[msg("1")],
        batches=[RateLimited(3), RateLimited(3), [msg("1"), msg("2")]],
    )
    sleep = RecordingSleep()
    handler = _Handler()
    poller = _poller(chat, CursorStore(tmp_path / "c.json"), sleep)

    await poller.run(handler, max_polls=1)

    assert chat.recent_calls == ["1", "1", "1"]
    assert handler.seen == ["2"]
    assert sleep.calls == [30, 30, 5]


@pytest.mark.anyio
async def test_rate_limit_past_retry_bound_is_fatal(tmp_path: Path) -> None:
    chat = FakeChat(history=[msg("1")], batches=[RateLimited(1)] * 10)
    store = CursorStore(tmp_path / "c.json")
    sleep = RecordingSleep()
    poller = _poller(chat, store, sleep, retries=2)

    with pytest.raises(RetryExhausted) as exc:
        await poller.run(_Handler())

    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, RateLimited)
    assert len(chat.recent_calls) == 3
    assert await store.get() == "1"


@pytest.mark.anyio
async def test_fetch_failure_does_not_move_cursor(tmp_path: Path) -> None:
    chat = FakeChat(history=[msg("1")], batches=[None, [msg("1"), msg("2")]])
    handler = _Handler()
    poller = _poller(chat, CursorStore(tmp_path / "c.json"), RecordingSleep())

    await poller.run(handler, max_polls=2)

    assert chat.recent_calls == ["1", "1"]
    assert handler.seen == ["2"]
    assert poller.cursor == "2"


@pytest.mark.anyio
async def test_empty_room_relays_everything_posted_later(tmp_path: Path) -> None:
    chat = FakeChat(history=[], batches=[[msg("a"), msg("b")], [msg("b"), msg("c")]])
    store = CursorStore(tmp_path / "c.json")
    handler = _Handler()
    poller = _poller(chat, store, RecordingSleep())

    await poller.run(handler, max_polls=2)

    assert chat.recent_calls == [None, "b"]
    assert handler.seen == ["a", "b", "c"]
    assert await store.get() == "c"


@pytest.mark.anyio
async def test_bootstrap_seeds_from_notification_when_no_recent_messages(
    tmp_path: Path,
) -> None:
    notices = [note(f"n{i}") for i in range(10)]
    chat = FakeChat(history=notices, batches=[[note("n9"), msg("fresh")]])
    store = CursorStore(tmp_path / "c.json")
    handler = _Handler()
    poller = _poller(chat, store, RecordingSleep())

    await poller.run(handler, max_polls=1)

    assert chat.recent_calls == ["n9"]
    assert handler.seen == ["fresh"]
    assert await store.get() == "fresh"


@pytest.mark.anyio
async def test_notifications_are_stepped_over_not_handled(tmp_path: Path) -> None:
    chat = FakeChat(
        history=[msg("1")],
        batches=[[msg("1"), note("2"), msg("3"), note("4")]],
    )
    store = CursorStore(tmp_path / "c.json")
    handler = _Handler(fail_on={"3"})
    poller = _poller(chat, store, RecordingSleep())

    await poller.run(handler, max_polls=1)

    assert handler.seen == ["3"]
    assert poller.cursor == "2"
    assert await store.get() == "2"


@pytest.mark.anyio
async def test_first_element_is_dropped_even_when_it_is_not_the_cursor(
    tmp_path: Path,
) -> None:
    store = CursorStore(tmp_path / "c.json")
    await store.set("10")
    chat = FakeChat(batches=[[msg("9"), msg("11"), msg("12")]])
    poller = _poller(chat, store, RecordingSleep())
    await poller.bootstrap()

    batch = await poller.next_batch()

    assert [m.id for m in batch] == ["11", "12"]
    assert poller.cursor == "10"


@pytest.mark.anyio
async def test_empty_response_returns_nothing_and_keeps_cursor(tmp_path: Path) -> None:
    store = CursorStore(tmp_path / "c.json")
    await store.set("10")
    chat = FakeChat(batches=[[]])
    handler = _Handler()
    poller = _poller(chat, store, RecordingSleep())
    await poller.bootstrap()

    assert await poller.next_batch() == []
    assert await poller.poll_once(handler) == 0
    assert handler.seen == []
    assert poller.cursor == "10"
    assert await store.get() == "10"
