from datetime import datetime, timezone
from typing import Optional, Union

from dateutil import parser as date_parser


def get_utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert any datetime to timezone-aware UTC datetime.

    Args:
        dt: A datetime object (naive or aware) or None

    Returns:
        A timezone-aware datetime in UTC, or None if input is None

    Behavior:
        - If input is None: returns None
        - If input is already timezone-aware: converted to UTC
        - If input is timezone-naive: assumes UTC and adds timezone.utc

    Datetimes read back from SQLite lose their timezone information, so
    everything coming out of the store goes through here.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None and dt.tzinfo.utcoffset(dt) is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Normalize an instant to UTC before it is stored or compared."""
    return ensure_utc_aware(dt)


def seconds_until(ts: datetime, now: Optional[datetime] = None) -> float:
    """Wall-clock seconds from now until ts, never negative."""
    now = now or get_utc_now()
    return max(0.0, (to_utc(ts) - now).total_seconds())


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse an RFC3339 / ISO-8601 timestamp into an aware UTC datetime.

    Timestamps without an offset are taken to be UTC. Raises ValueError when
    the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid timestamp: {value!r}")
    try:
        parsed = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError) as e:
        raise ValueError(f"invalid timestamp {value!r}: {e}") from e
    return to_utc(parsed)
