"""
This module contains helper functions for converting between human-readable
strings and numbers: sizes with units, clock-style durations and remaining times.
They are used by the progress parsers and in log messages.
"""

import re
from datetime import timedelta
from typing import Optional

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024 ** 2,
    "MB": 1024 ** 2,
    "G": 1024 ** 3,
    "GB": 1024 ** 3,
    "T": 1024 ** 4,
    "TB": 1024 ** 4,
    "P": 1024 ** 5,
    "PB": 1024 ** 5,
}
_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]{0,2})$")
_CLOCK_PATTERN = re.compile(r"(?:(\d+):)?(\d{1,2}):(\d{1,2}(?:\.\d+)?)")


def format_timedelta(td_object: timedelta) -> str:
    """
    Formats a timedelta object into a "HH:MM:SS" string.

    Args:
        td_object: The timedelta object to format.

    Returns:
        A string representing the timedelta in HH:MM:SS format.
        For example, a timedelta of 7261 seconds becomes "02:01:01".
        Returns "00:00:00" if the input is not a valid timedelta object.
    """
    if not isinstance(td_object, timedelta):
        return "00:00:00"

    total_seconds = max(0, int(td_object.total_seconds()))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def formatted_size(size_bytes: float) -> str:
    """
    Converts a size in bytes to a human-readable string (e.g., B, KB, MB, GB, TB).

    Args:
        size_bytes: The size in bytes.

    Returns:
        A formatted string with the appropriate unit.
        For example, 1536 becomes "1.50 KB", and 2097152 becomes "2 MB".
    """
    if size_bytes < 0:
        size_bytes = 0

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    factor = 1024.0

    if size_bytes == 0:
        return "0 B"

    for unit in units:
        if size_bytes < factor:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            # Clean up ".00" for whole numbers (e.g., "2.00 MB" -> "2 MB").
            return f"{size_bytes:.2f} {unit}".replace(".00", "")
        size_bytes /= factor

    return f"{size_bytes:.2f} {units[-1]}".replace(".00", "")


def parse_size(size_str: str) -> int:
    """
    Parses a magnitude-plus-unit string into a byte count.

    Units are binary (1024 based) and case-insensitive: B, KB, MB, GB, TB, PB,
    or their single-letter forms K, M, G, T, P. A bare number is a byte count.
    Whitespace between the number and the unit is ignored.

    Examples:
        "512 KB" -> 524288
        "1.5 GB" -> 1610612736
        "0"      -> 0

    Raises:
        ValueError: The string is not a number with a known unit.
    """
    compact = str(size_str).replace(" ", "").strip()
    match = _SIZE_PATTERN.match(compact)
    if not match:
        raise ValueError(f"Invalid size format: '{size_str}'")

    number, unit = match.groups()
    unit = unit.upper()
    if unit not in _SIZE_UNITS:
        raise ValueError(f"Unknown size unit '{unit}' in '{size_str}'")
    return int(float(number) * _SIZE_UNITS[unit])


def parse_clock(clock_str: str) -> Optional[float]:
    """
    Parses an 'HH:MM:SS.sss' timecode into seconds.

    Hours are optional and may exceed two digits (long encodes). Returns None if
    the string is not a timecode, which the encoder emits as 'N/A' before the
    first frame.
    """
    match = _CLOCK_PATTERN.fullmatch(clock_str.strip())
    if not match:
        return None
    hours_str, minutes_str, seconds_str = match.groups()
    hours = int(hours_str) if hours_str else 0
    return hours * 3600 + int(minutes_str) * 60 + float(seconds_str)


def format_seconds(seconds: Optional[float]) -> Optional[str]:
    """Formats a remaining time in seconds as 'HH:MM:SS', or None when unknown."""
    if seconds is None or seconds < 0:
        return None
    return format_timedelta(timedelta(seconds=seconds))
