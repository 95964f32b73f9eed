"""Nanosecond timestamp helpers.

Keyframe timestamps are integer nanoseconds since the epoch, matching the
EuRoC convention. The most negative int64 is reserved as the "invalid"
sentinel.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

import numpy as np

INVALID_TIME: int = int(np.iinfo(np.int64).min)


def get_invalid_time() -> int:
    """Return the sentinel used for missing timestamps."""
    return INVALID_TIME


def is_valid(time_ns: int) -> bool:
    """Return True if the timestamp is not the invalid sentinel."""
    return time_ns != INVALID_TIME


def nsec_now() -> int:
    """Return the current wall-clock time in nanoseconds since the epoch."""
    return time.time_ns()


def nsec_to_sec(time_ns: int) -> float:
    """Convert integer nanoseconds to decimal seconds."""
    return float(time_ns) * 1e-9


def sec_to_nsec(time_sec: float) -> int:
    """Convert decimal seconds to integer nanoseconds (truncating)."""
    return int(time_sec * 1e9)


def nsec_to_datetime(time_ns: int) -> datetime:
    """Convert nanoseconds since the epoch to an aware UTC datetime."""
    seconds, remainder = divmod(time_ns, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(
        microsecond=remainder // 1000
    )


def datetime_to_nsec(value: datetime) -> int:
    """Convert a datetime to nanoseconds since the epoch.

    Naive datetimes are interpreted as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


def time_str() -> str:
    """Return local time formatted for output directory names."""
    return datetime.now().strftime("%Y_%m_%d_%H_%M_%S")
