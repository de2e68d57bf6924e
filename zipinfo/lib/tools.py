"""
Miscellaneous helper functions.
"""
from __future__ import annotations

from datetime import datetime

from zipinfo.lib.types import buf


def int64(low: int, high: int) -> int:
    """
    Combine two unsigned 32-bit halves into one 64-bit value.
    """
    return (low & 0xFFFFFFFF) + ((high & 0xFFFFFFFF) << 32)


def dostime(stamp: int) -> datetime | None:
    """
    Parses a packed DOS timestamp `(date << 16) | time` into a datetime object. The result is
    `None` if the stamp does not describe a valid date, which includes the common all-zero stamp.
    """
    d, t = stamp >> 16, stamp & 0xFFFF
    s = (t & 0x1F) << 1
    try:
        return datetime(
            year   = ((d & 0xFE00) >> 0x9) + 1980,  # noqa
            month  = ((d & 0x01E0) >> 0x5),         # noqa
            day    = ((d & 0x001F) >> 0x0),         # noqa
            hour   = ((t & 0xF800) >> 0xB),         # noqa
            minute = ((t & 0x07E0) >> 0x5),         # noqa
            second = 59 if s == 60 else s,          # noqa
        )
    except ValueError:
        return None


def truncated(name: str | buf, limit: int) -> str | bytes:
    """
    Cut a file name to at most `limit` characters, or bytes for a raw name; a non-positive limit
    disables truncation.
    """
    if not isinstance(name, str):
        name = bytes(name)
    if limit > 0:
        name = name[:limit]
    return name
