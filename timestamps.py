"""
Timestamp helpers

Converts between the values the document database hands back (BSON dates,
which lose sub-millisecond precision and may come back naive, BSON
timestamps, ISO strings written by older clients) and timezone-aware UTC
datetimes used everywhere in the app.

Required fields decode a missing value as "now" (a partially written
document still renders). Optional fields must be decoded with
``optional=True`` so that "never happened" stays ``None``.
"""

from datetime import date, datetime, timezone
import logging
from typing import Any, Optional

from bson.timestamp import Timestamp

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    """Placeholder replaced by the write time when a document is stored."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_ms(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_date(value: Any, optional: bool = False) -> Optional[datetime]:
    """Decode a stored timestamp into an aware UTC datetime."""
    if value is None or value is SERVER_TIMESTAMP:
        return None if optional else utcnow()

    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, Timestamp):
        return value.as_datetime()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError:
            logger.warning("Unparseable timestamp %r", value)

    return None if optional else utcnow()


def to_server_value(value: Optional[datetime]) -> Optional[datetime]:
    """Encode a datetime for storage; ``None`` stays ``None``."""
    if value is None:
        return None
    return _truncate_ms(_as_utc(value))


def resolve_server_timestamps(value: Any, now: datetime) -> Any:
    """Replace every SERVER_TIMESTAMP inside ``value`` with ``now``."""
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, now) for v in value]
    return value
