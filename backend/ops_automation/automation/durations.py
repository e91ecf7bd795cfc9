"""Duration parsing for delays and temporal thresholds."""

import math
import re
from datetime import timedelta
from typing import Any

_UNIT_SECONDS = {
    "w": 7 * 24 * 3600,
    "d": 24 * 3600,
    "h": 3600,
    "m": 60,
    "s": 1,
}

_DURATION_RE = re.compile(r"^(?:(\d+(?:\.\d+)?)([wdhms]))+$")
_PART_RE = re.compile(r"(\d+(?:\.\d+)?)([wdhms])")

# Delays and thresholds beyond this are rejected as invalid.
MAX_DURATION = timedelta(days=5 * 366)


def _from_seconds(seconds: float, original: Any) -> timedelta:
    try:
        seconds = float(seconds)
    except OverflowError:
        raise ValueError(f"Duration out of range: {original!r}") from None
    if not math.isfinite(seconds) or abs(seconds) > MAX_DURATION.total_seconds():
        raise ValueError(f"Duration out of range: {original!r}")
    return timedelta(seconds=seconds)


def parse_duration(value: Any) -> timedelta:
    """Parse a duration.

    Accepted forms:
    - timedelta -> returned unchanged
    - int/float -> seconds
    - "2d", "3h", "30m", "45s", "1w", and concatenations like "1d12h"
    - a bare numeric string -> seconds

    Raises:
        ValueError: If the value is negative, longer than MAX_DURATION or
            not a recognised duration
    """
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        result = _from_seconds(value, value)
    elif isinstance(value, str):
        text = value.strip().lower().replace(" ", "")
        if not text:
            raise ValueError("Empty duration")
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_RE.match(text):
                raise ValueError(f"Invalid duration: {value!r}") from None
            seconds = sum(float(n) * _UNIT_SECONDS[u] for n, u in _PART_RE.findall(text))
        result = _from_seconds(seconds, value)
    else:
        raise ValueError(f"Invalid duration: {value!r}")

    if result < timedelta(0):
        raise ValueError(f"Duration must not be negative: {value!r}")
    if result > MAX_DURATION:
        raise ValueError(f"Duration out of range: {value!r}")
    return result


def format_duration(value: timedelta) -> str:
    """Format a timedelta in the compact form accepted by parse_duration."""
    total = int(value.total_seconds())
    if total == 0:
        return "0s"
    parts = []
    for unit in ("d", "h", "m", "s"):
        size = _UNIT_SECONDS[unit]
        count, total = divmod(total, size)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)
