from __future__ import annotations

from pathlib import Path

DEFAULT_CHAT_URL = "https://api.hipchat.com"
DEFAULT_STATE_PATH = Path("/var/lib/roomrelay") / "cursor.json"
HOME_CONFIG_PATH = Path.home() / ".config" / "roomrelay" / "manager.toml"

WORKER_NAME_PREFIX = "roomrelay"
DEFAULT_WORKER_IMAGE = "roomrelay:latest"

LABEL_PREFIX = "io.roomrelay"
MARKER_LABEL = f"{LABEL_PREFIX}.managed"
MARKER_VALUE = "true"
DIGEST_LABEL = f"{LABEL_PREFIX}.digest"

ENV_PREFIX = "ROOMRELAY_"
