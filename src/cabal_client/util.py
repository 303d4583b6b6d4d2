from __future__ import annotations

import re
import secrets
import time
from typing import Any, Callable, List, Sequence, TypeVar

T = TypeVar("T")

DAY_MS = 24 * 60 * 60 * 1000
_KEY_RE = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)
_SCHEMES = ("cabal://", "cbl://", "dat://")


def is_key(value: Any) -> bool:
    """Return True when ``value`` has the shape of a 64-hex-character public key."""

    return isinstance(value, str) and _KEY_RE.match(value) is not None


def scrub_key(key: str) -> str:
    """Strip URI scheme, search params and slashes from a cabal key.

    ``scrub_key("cabal://abcd...?admin=7331")`` returns ``"abcd..."``.
    """

    if "?" in key:
        key = key[: key.index("?")]
    for scheme in _SCHEMES:
        key = key.replace(scheme, "")
    return key.replace("/", "").strip()


def generate_key() -> str:
    return secrets.token_hex(32)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MonotonicClock:
    """Millisecond clock that never returns the same value twice."""

    def __init__(self, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._last = 0

    def __call__(self) -> int:
        now = self._now()
        if now <= self._last:
            now = self._last + 1
        self._last = now
        return now


def day_start(ts_ms: float) -> int:
    """Return the UTC midnight timestamp of the day containing ``ts_ms``."""

    ts = int(ts_ms)
    return ts - (ts % DAY_MS)


def merge(left: Sequence[T], right: Sequence[T], value_func: Callable[[T], float]) -> List[T]:
    """Stable two-pointer merge of two ascending sequences.

    On equal values the entry from ``left`` is taken first.
    """

    if not left:
        return list(right)
    if not right:
        return list(left)
    result: List[T] = []
    l_index = 0
    r_index = 0
    while l_index < len(left) and r_index < len(right):
        if value_func(left[l_index]) <= value_func(right[r_index]):
            result.append(left[l_index])
            l_index += 1
        else:
            result.append(right[r_index])
            r_index += 1
    result.extend(left[l_index:])
    result.extend(right[r_index:])
    return result


def message_timestamp(message: dict) -> float:
    value = message.get("value") or {}
    try:
        return float(value.get("timestamp", 0))
    except (TypeError, ValueError):
        return 0.0
