"""Timestamp parsing, formatting and arithmetic for itinerary data."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
import math

from src.errors import MalformedTimestamp


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises MalformedTimestamp instead of substituting a default.
    """
    if not isinstance(value, str) or not value.strip():
        raise MalformedTimestamp(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedTimestamp(value) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(instant: datetime) -> str:
    """Render an instant as an ISO-8601 UTC string with a Z suffix."""
    return instant.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def format_clock(instant: datetime, tz: tzinfo | None = None) -> str:
    """Render an instant as HH:MM in ``tz`` (local time when omitted)."""
    return instant.astimezone(tz).strftime("%H:%M")


def delay_minutes(scheduled: datetime, estimated: datetime | None) -> int | None:
    """Whole minutes of delay; None without an estimate, never negative."""
    if estimated is None:
        return None
    seconds = (estimated - scheduled).total_seconds()
    return max(0, math.floor(seconds / 60))


def progress_fraction(start: datetime, end: datetime, now: datetime) -> float:
    """Elapsed share of the interval [start, end], clamped to [0, 1]."""
    if end <= start:
        return 1.0
    fraction = (now - start).total_seconds() / (end - start).total_seconds()
    return min(max(fraction, 0.0), 1.0)


def seconds_until(deadline: datetime, now: datetime) -> float:
    return (deadline - now).total_seconds()


__all__ = [
    "utc_now",
    "parse_timestamp",
    "format_timestamp",
    "format_clock",
    "delay_minutes",
    "progress_fraction",
    "seconds_until",
]
