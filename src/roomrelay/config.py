from __future__ import annotations

from pathlib import Path

from .constants import HOME_CONFIG_PATH


class ConfigError(RuntimeError):
    pass


def display_path(path: Path) -> str:
    try:
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            return f"./{path.relative_to(cwd).as_posix()}"
        home = Path.home()
        if path.is_relative_to(home):
            return f"~/{path.relative_to(home).as_posix()}"
    except (OSError, ValueError):
        return str(path)
    return str(path)


def resolve_config_path(path: str | Path | None) -> Path:
    return Path(path).expanduser() if path else HOME_CONFIG_PATH
