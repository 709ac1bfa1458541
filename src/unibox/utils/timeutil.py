"""Timestamp helpers.

All timestamps are handled as aware UTC datetimes. SQLite hands back naive
values, which are UTC by construction.
"""

from datetime import UTC, datetime

# Epoch values above this are treated as milliseconds
_EPOCH_MS_THRESHOLD = 10_000_000_000


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_utc(value: datetime | None) -> str | None:
    """ISO-8601 rendering of a stored timestamp, or None."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    """Parse ISO-8601 strings and epoch seconds or milliseconds.

    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            epoch: float | None = float(text)
        except ValueError:
            epoch = None
        if epoch is not None:
            return parse_timestamp(epoch)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def period_key(moment: datetime | None = None) -> str:
    """Usage period key (YYYY-MM) of the given moment's UTC month."""
    moment = ensure_utc(moment) if moment else utcnow()
    return f"{moment.year:04d}-{moment.month:02d}"
