import json
from pathlib import Path

import pytest

from roomrelay.cursor_store import CursorStore


@pytest.mark.anyio
async def test_cursor_is_absent_before_first_write(tmp_path: Path) -> None:
    store = CursorStore(tmp_path / "cursor.json")
    assert await store.get() is None


@pytest.mark.anyio
async def test_cursor_survives_a_new_store_instance(tmp_path: Path) -> None:
    path = tmp_path / "state" / "cursor.json"
    await CursorStore(path).set("42")

    restarted = CursorStore(path)
    assert await restarted.get() == "42"
    assert not path.with_suffix(".json.tmp").exists()


@pytest.mark.anyio
async def test_cursor_overwrite_keeps_latest(tmp_path: Path) -> None:
    store = CursorStore(tmp_path / "cursor.json")
    await store.set("a")
    await store.set("b")
    assert await store.get() == "b"
    payload = json.loads((tmp_path / "cursor.json").read_text(encoding="utf-8"))
    assert payload == {"values": {"cursor": "b"}, "version": 1}


@pytest.mark.anyio
async def test_corrupt_file_reads_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "cursor.json"
    path.write_text("{not json", encoding="utf-8")
    assert await CursorStore(path).get() is None


@pytest.mark.anyio
async def test_version_mismatch_reads_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "cursor.json"
    path.write_text(
        json.dumps({"version": 99, "values": {"cursor": "7"}}), encoding="utf-8"
    )
    assert await CursorStore(path).get() is None


@pytest.mark.anyio
async def test_keys_are_independent(tmp_path: Path) -> None:
    path = tmp_path / "cursor.json"
    await CursorStore(path, key="one").set("1")
    assert await CursorStore(path, key="two").get() is None
    assert await CursorStore(path, key="one").get() == "1"


@pytest.mark.anyio
async def test_unreadable_path_reads_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "cursor.json"
    path.mkdir()
    assert await CursorStore(path).get() is None


@pytest.mark.anyio
async def test_stale_temp_file_is_replaced(tmp_path: Path) -> None:
    path = tmp_path / "cursor.json"
    path.with_suffix(".json.tmp").write_text("half written", encoding="utf-8")

    await CursorStore(path).set("5")

    assert await CursorStore(path).get() == "5"
    assert not path.with_suffix(".json.tmp").exists()
