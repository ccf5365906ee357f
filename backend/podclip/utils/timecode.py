"""Conversion between human time strings and seconds."""
import math
from typing import Union

from podclip.errors import InvalidTimecode

TimeValue = Union[str, int, float]


def time_to_seconds(value: TimeValue) -> float:
    """
    Convert a time value to seconds.

    Accepts ``HH:MM:SS``, ``MM:SS`` (both with optional fractional seconds)
    or a non-negative number of seconds.

    Raises:
        InvalidTimecode: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise InvalidTimecode(f"Invalid time value: {value!r}")

    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            raise InvalidTimecode(f"Time must be a non-negative number: {value!r}")
        return float(value)

    if not isinstance(value, str) or not value.strip():
        raise InvalidTimecode("Invalid time string")

    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise InvalidTimecode(f"Time string must be in HH:MM:SS or MM:SS format: {value!r}")

    try:
        whole = [int(p) for p in parts[:-1]]
        seconds = float(parts[-1])
    except ValueError:
        raise InvalidTimecode(f"Time string has non-numeric fields: {value!r}")

    if any(p < 0 for p in whole) or seconds < 0 or not math.isfinite(seconds):
        raise InvalidTimecode(f"Time fields must be non-negative: {value!r}")
    if seconds >= 60:
        raise InvalidTimecode(f"Seconds field out of range: {value!r}")

    if len(whole) == 1:
        minutes, = whole
        return minutes * 60 + seconds

    hours, minutes = whole
    if minutes >= 60:
        raise InvalidTimecode(f"Minutes field out of range: {value!r}")
    return hours * 3600 + minutes * 60 + seconds


def seconds_to_time(seconds: float) -> str:
    """Render seconds as ``HH:MM:SS`` (fractions are floored)."""
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds < 0:
        raise InvalidTimecode("Seconds must be a non-negative number")

    total = int(math.floor(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_seconds(seconds: float) -> str:
    """Render seconds as ``HH:MM:SS.mmm``."""
    if seconds < 0:
        raise InvalidTimecode("Seconds must be a non-negative number")
    millis = int(round(seconds * 1000))
    total, ms = divmod(millis, 1000)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"
