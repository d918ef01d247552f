from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import msgspec

DEFAULT_POLL_INTERVAL = 5.0

ReplyFormat = Literal["text", "html"]


@dataclass(frozen=True, slots=True)
class Subscription:
    """One room bridged to one webhook. All five fields together are its key."""

    api_key: str
    room_id: str
    sender: str
    target_url: str
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def fields(self) -> dict[str, str]:
        return {
            "api_key": self.api_key,
            "room_id": self.room_id,
            "sender": self.sender,
            "target_url": self.target_url,
            "poll_interval": format_interval(self.poll_interval),
        }

    def digest(self) -> str:
        canonical = "\x1f".join(f"{key}={value}" for key, value in self.fields().items())
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def format_interval(value: float) -> str:
    return repr(float(value))


class ChatMessage(msgspec.Struct, forbid_unknown_fields=False):
    """One room history item.

    ``item`` keeps the item exactly as the chat service sent it; that is what
    the webhook receives.
    """

    id: str
    type: str = "message"
    message: str = ""
    date: str | None = None
    from_: Any = msgspec.field(default=None, name="from")
    item: dict[str, Any] = msgspec.field(default_factory=dict)

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> ChatMessage:
        return msgspec.structs.replace(msgspec.convert(item, type=cls), item=item)

    @property
    def is_message(self) -> bool:
        return self.type == "message"

    def to_payload(self) -> dict[str, Any]:
        if self.item:
            return dict(self.item)
        payload = msgspec.to_builtins(self)
        payload.pop("item", None)
        return payload


class WebhookReply(msgspec.Struct, forbid_unknown_fields=False):
    text: str = msgspec.field(name="message")
    format: ReplyFormat = "text"


@dataclass(frozen=True, slots=True)
class WorkerInfo:
    id: str
    name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    created_at: datetime | None = field(default=None, compare=False, hash=False)

    @property
    def running(self) -> bool:
        return self.status == "running"
