"""Shared timestamp and timezone helpers for the truth pipeline."""

from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_ASSUMED_TIMEZONE = "UTC"


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize a timezone name and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None
    return raw


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def parse_iso_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are read as UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return as_utc(parsed)


def local_date_for_timezone(ts: datetime, timezone_name: str) -> date:
    """Project a timestamp into the calendar date of the given zone."""
    return as_utc(ts).astimezone(ZoneInfo(timezone_name)).date()


def day_key_for(start: str, timezone_name: Any) -> str | None:
    """Calendar day (YYYY-MM-DD) of ``start`` in its own timezone.

    Invalid or missing zones fall back to the UTC date. Unparseable
    timestamps fall back to their leading date characters, or None when
    those are not a date either.
    """
    parsed = parse_iso_timestamp(start)
    if parsed is None:
        prefix = start.strip()[:10] if isinstance(start, str) else ""
        try:
            return date.fromisoformat(prefix).isoformat()
        except ValueError:
            return None
    zone = normalize_timezone_name(timezone_name)
    if zone is None:
        return parsed.date().isoformat()
    return local_date_for_timezone(parsed, zone).isoformat()


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def previous_days(day: str, count: int) -> list[str]:
    """The ``count`` calendar days before ``day``, oldest first."""
    anchor = date.fromisoformat(day)
    return [
        (anchor - timedelta(days=offset)).isoformat()
        for offset in range(count, 0, -1)
    ]
