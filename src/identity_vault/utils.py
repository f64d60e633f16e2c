"""Utility helpers for the identity vault storage and sync engine."""

from __future__ import annotations

import json
import random
import string
import time
from typing import Any, Callable, Mapping

Clock = Callable[[], int]

_ID_ALPHABET = string.digits + string.ascii_lowercase
_MISSING = object()


def now_ms() -> int:
    """Return wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def generate_queue_id(timestamp_ms: int) -> str:
    """Return a queue item id: ``queue_<ms>_<9 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"queue_{timestamp_ms}_{suffix}"


def dumps_compact(value: Any) -> str:
    """Serialize to minimal JSON; used for both persistence and size estimates."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def estimate_size(value: Any) -> int:
    """Rough serialized size of a value in characters."""
    return len(dumps_compact(value))


def resolve_key_path(envelope: Mapping[str, Any], key_path: str) -> Any:
    """Resolve a dotted key path (``data.type``, ``timestamp``) against an envelope.

    Returns a private sentinel when any segment is missing so that a missing
    field never compares equal to an explicit ``None``.
    """
    current: Any = envelope
    for segment in key_path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING
