"""Formatting utilities for consistent output across the engine and CLI."""

import math
import re
from datetime import datetime, timezone

# Shown instead of a countdown once the reset time has passed
ALREADY_RESET_TEXT = "Restored"

_FRACTION_RE = re.compile(r"\.(\d+)")


def format_delta(ms: float) -> str:
    """Format time until a quota reset.

    Args:
        ms: Milliseconds until the reset (zero or negative once it passed)

    Returns:
        Formatted countdown, rounded up to whole minutes:
        - under an hour: "59m"
        - under a day: "1h 1m"
        - otherwise: "1d 1h 0m"
    """
    if ms <= 0:
        return ALREADY_RESET_TEXT
    total_minutes = math.ceil(ms / 60_000)

    if total_minutes < 60:
        return f"{total_minutes}m"

    total_hours, minutes = divmod(total_minutes, 60)
    if total_hours < 24:
        return f"{total_hours}h {minutes}m"

    days, hours = divmod(total_hours, 24)
    return f"{days}d {hours}h {minutes}m"


def format_reset_time(reset_time: datetime) -> str:
    """Format a reset time for display in local time ("2025-01-31 14:05")."""
    return reset_time.astimezone().strftime("%Y-%m-%d %H:%M")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as sent by the language server.

    Accepts a trailing "Z" and fractional seconds of any precision, which
    datetime.fromisoformat() rejects on older interpreters. Naive values are
    taken as UTC.

    Raises:
        ValueError: If the value is not a timestamp.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # Normalize fractional seconds to microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_percentage(value: float | None) -> str:
    """Format a remaining percentage for quota tables."""
    if value is None:
        return "N/A"
    return f"{value:.2f}%"
