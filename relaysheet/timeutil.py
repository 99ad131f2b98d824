"""Instant parsing and formatting helpers used at the store/HTTP boundary."""

from __future__ import annotations

import math
import os
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .schedule import round_half_up

DEFAULT_RACE_TIMEZONE = "America/Los_Angeles"


def race_timezone() -> ZoneInfo:
    """Timezone race-day times are entered in (``RACE_TIMEZONE``)."""
    name = os.environ.get("RACE_TIMEZONE") or DEFAULT_RACE_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_RACE_TIMEZONE)


def _to_utc(dt: datetime) -> datetime:
    """Aware UTC datetime at millisecond precision.

    Serialized instants carry milliseconds, so everything the engine sees is
    cut to the same precision before use.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=dt.microsecond - dt.microsecond % 1000)


def parse_instant(value: Any) -> Optional[datetime]:
    """Return an aware UTC datetime, or None for empty/unparseable input.

    Naive values are taken to be UTC already.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _to_utc(parsed)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an instant as UTC ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    dt = _to_utc(value)
    precision = "milliseconds" if dt.microsecond else "seconds"
    return dt.isoformat(timespec=precision).replace("+00:00", "Z")


def normalize_instant(value: Any) -> Optional[str]:
    return to_iso(parse_instant(value))


def local_to_utc(value: Any, tz: Optional[ZoneInfo] = None) -> Optional[datetime]:
    """Interpret a datetime-local string (``YYYY-MM-DDTHH:MM``) in ``tz``.

    Strings carrying their own offset keep it. Returns None when the value
    cannot be parsed.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or race_timezone())
    return _to_utc(parsed)


def utc_to_local_input(value: Any, tz: Optional[ZoneInfo] = None) -> str:
    """Format an instant for a datetime-local input; empty string if unknown."""
    dt = parse_instant(value)
    if dt is None:
        return ""
    return dt.astimezone(tz or race_timezone()).strftime("%Y-%m-%dT%H:%M")


def format_friendly(value: Any, tz: Optional[ZoneInfo] = None) -> str:
    """Short weekday + 12h clock in the race timezone, e.g. ``Fri 6:05 AM``."""
    dt = parse_instant(value)
    if dt is None:
        return "-"
    local = dt.astimezone(tz or race_timezone())
    hour = local.hour % 12 or 12
    return f"{local.strftime('%a')} {hour}:{local.minute:02d} {local.strftime('%p')}"


def format_hms(total_seconds: Optional[float]) -> str:
    if total_seconds is None or not math.isfinite(total_seconds):
        return "-"
    sign = "-" if total_seconds < 0 else ""
    sec = abs(round_half_up(total_seconds))
    return f"{sign}{sec // 3600:02d}:{(sec % 3600) // 60:02d}:{sec % 60:02d}"


def format_pace(seconds_per_mile: Optional[float]) -> str:
    if seconds_per_mile is None or not math.isfinite(seconds_per_mile):
        return "-"
    rounded = round_half_up(seconds_per_mile)
    return f"{rounded // 60:02d}:{rounded % 60:02d}/mi"
