from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import msgspec

from .logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1
CURSOR_KEY = "cursor"


class _CursorState(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    values: dict[str, str] = msgspec.field(default_factory=dict)


class CursorStore:
    """Last fully relayed message id, persisted under a fixed key.

    One store per worker; the poll loop is its only writer. Writes go to a
    temp file that is fsynced and then renamed over the old one, so a reader
    sees either the previous cursor or the new one.
    """

    def __init__(self, path: Path, *, key: str = CURSOR_KEY, log: Any = None) -> None:
        self._path = path
        self._key = key
        self._log = log or logger

    def _read(self) -> _CursorState:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return _CursorState(version=STATE_VERSION)
        except OSError as exc:
            self._log.warning(
                "cursor_store.load_failed", path=str(self._path), error=str(exc)
            )
            return _CursorState(version=STATE_VERSION)
        try:
            state = msgspec.json.decode(raw, type=_CursorState)
        except msgspec.DecodeError as exc:
            self._log.warning(
                "cursor_store.load_failed", path=str(self._path), error=str(exc)
            )
            return _CursorState(version=STATE_VERSION)
        if state.version != STATE_VERSION:
            self._log.warning(
                "cursor_store.version_mismatch",
                path=str(self._path),
                version=state.version,
                expected=STATE_VERSION,
            )
            return _CursorState(version=STATE_VERSION)
        return state

    def _write(self, state: _CursorState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        with open(tmp_path, "wb") as handle:
            handle.write(msgspec.json.format(msgspec.json.encode(state), indent=2))
            handle.write(b"\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)

    async def get(self) -> str | None:
        return self._read().values.get(self._key) or None

    async def set(self, message_id: str) -> None:
        state = self._read()
        state.values[self._key] = message_id
        self._write(state)
