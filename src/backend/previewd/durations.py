"""Go-style duration strings ("4h", "90m", "1h30m", "45s") used for TTLs."""

import re
from datetime import timedelta

from previewd.errors import ValidationError

_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "1h30m" into a timedelta.

    Raises ValidationError for empty, malformed or non-positive values.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("duration must not be empty")

    pos = 0
    seconds = 0.0
    for match in _PART.finditer(raw):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()

    if pos != len(raw):
        raise ValidationError(f"invalid duration '{value}': expected e.g. 4h, 90m or 1h30m")
    if seconds <= 0:
        raise ValidationError(f"duration '{value}' must be positive")
    return timedelta(seconds=seconds)


def format_duration(delta: timedelta) -> str:
    total = int(delta.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds or not out:
        out += f"{seconds}s"
    return out
