"""UTC-everywhere time handling. Every stored and compared timestamp is aware UTC."""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)


def format_iso(dt: datetime | None) -> str | None:
    """ISO 8601 string in UTC for API output; None passes through."""
    if dt is None:
        return None
    return to_utc(dt).isoformat()


def seconds_until(dt: datetime, now: datetime | None = None) -> int:
    """Whole seconds from ``now`` until ``dt``, never negative."""
    remaining = (to_utc(dt) - (now or now_utc())).total_seconds()
    return max(0, int(remaining))
