from __future__ import annotations

import os
import re
import sys
from typing import Any, TextIO

import structlog
from structlog.types import Processor

BEARER_RE = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+")
AUTH_TOKEN_RE = re.compile(r"(?i)(auth_token=)[A-Za-z0-9._~+/=-]+")
SECRET_FIELDS = frozenset({"api_key", "token", "authorization", "auth_token"})

_LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
    "exception": 40,
    "critical": 50,
}

_MIN_LEVEL = _LEVELS["info"]

_log_file_handle: TextIO | None = None


def mask_secret(value: str | None, *, visible: int = 5) -> str:
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"...{value[-visible:]}"


def _drop_below_level(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if _LEVELS.get(method_name, 0) < _MIN_LEVEL:
        raise structlog.DropEvent
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return AUTH_TOKEN_RE.sub(
            r"\1[REDACTED]", BEARER_RE.sub("Bearer [REDACTED]", value)
        )
    if isinstance(value, dict):
        return {
            key: (
                mask_secret(str(val))
                if isinstance(key, str) and key.lower() in SECRET_FIELDS and val is not None
                else _redact(val)
            )
            for key, val in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def redact_event_dict(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask api keys and bearer tokens anywhere in the event, without mutating it."""
    return _redact(event_dict)


def _file_sink(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if _log_file_handle is not None:
        line = structlog.processors.JSONRenderer(default=str)(
            logger, method_name, dict(event_dict)
        )
        try:
            _log_file_handle.write(f"{line}\n")
            _log_file_handle.flush()
        except OSError:
            pass
    return event_dict


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_run_context(**fields: Any) -> None:
    structlog.contextvars.bind_contextvars(**fields)


class _ContainerStdout:
    """Stdout that goes quiet once the runtime detaches the log stream."""

    def __init__(self, stream: TextIO) -> None:
        self._stream: TextIO | None = stream

    def write(self, message: str) -> int:
        if self._stream is None:
            return 0
        try:
            return self._stream.write(message)
        except (BrokenPipeError, ValueError):
            self._stream = None
            return 0

    def flush(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.flush()
        except (BrokenPipeError, ValueError):
            self._stream = None


def _open_log_file(path: str | None) -> TextIO | None:
    global _log_file_handle
    if _log_file_handle is not None:
        _log_file_handle.close()
        _log_file_handle = None
    if not path:
        return None
    try:
        return open(path, "a", encoding="utf-8")
    except OSError:
        return None


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    """Configure structlog from ROOMRELAY_LOG_LEVEL, _FORMAT and _FILE."""
    global _MIN_LEVEL
    global _log_file_handle

    level_name = "debug" if debug else os.environ.get("ROOMRELAY_LOG_LEVEL", "info")
    _MIN_LEVEL = _LEVELS.get(level_name.strip().lower(), _LEVELS["info"])
    _log_file_handle = _open_log_file(os.environ.get("ROOMRELAY_LOG_FILE"))

    as_json = os.environ.get("ROOMRELAY_LOG_FORMAT", "console").strip().lower() == "json"
    processors: list[Processor] = [
        _drop_below_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if as_json:
        processors.append(structlog.processors.format_exc_info)
    processors += [redact_event_dict, _file_sink]
    processors.append(
        structlog.processors.JSONRenderer(default=str)
        if as_json
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=_ContainerStdout(sys.stdout)),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
