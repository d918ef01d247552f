from __future__ import annotations

import math
from collections.abc import Mapping

from .constants import DIGEST_LABEL, LABEL_PREFIX, MARKER_LABEL, MARKER_VALUE
from .model import Subscription

FIELD_NAMES = ("api_key", "room_id", "sender", "target_url", "poll_interval")


def field_label(name: str) -> str:
    return f"{LABEL_PREFIX}.{name}"


def encode_labels(subscription: Subscription) -> dict[str, str]:
    labels = {MARKER_LABEL: MARKER_VALUE, DIGEST_LABEL: subscription.digest()}
    for name, value in subscription.fields().items():
        labels[field_label(name)] = value
    return labels


def is_managed(labels: Mapping[str, str] | None) -> bool:
    return bool(labels) and labels.get(MARKER_LABEL) == MARKER_VALUE


def decode_labels(labels: Mapping[str, str] | None) -> Subscription | None:
    """Rebuild a subscription from worker labels.

    Returns ``None`` for foreign, partial or malformed label sets; never raises.
    """
    if labels is None or not is_managed(labels):
        return None
    values: dict[str, str] = {}
    for name in FIELD_NAMES:
        value = labels.get(field_label(name))
        if not isinstance(value, str) or not value:
            return None
        values[name] = value
    try:
        poll_interval = float(values["poll_interval"])
    except ValueError:
        return None
    if not math.isfinite(poll_interval) or poll_interval <= 0:
        return None
    return Subscription(
        api_key=values["api_key"],
        room_id=values["room_id"],
        sender=values["sender"],
        target_url=values["target_url"],
        poll_interval=poll_interval,
    )
