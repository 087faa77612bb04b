"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, to_utc, parse_iso, format_iso, seconds_until
