"""UTC time helpers shared by the store and the lifecycle code."""
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def to_iso(value):
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value):
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
