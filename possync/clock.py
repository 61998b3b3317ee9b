"""UTC time helpers shared by the client and the server.

Every timestamp that crosses a process boundary or lands in SQLite goes
through these helpers so string comparison matches chronological order.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width ISO-8601 in UTC."""
    return to_utc(value).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into a UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(value))


def from_millis(value: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(to_utc(value).timestamp() * 1000)
