"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

Number = Union[int, float]
Scalar = Union[Number, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: datetime) -> str:
    """Render ``dt`` as an ISO-8601 string with a ``Z`` suffix."""

    text = ensure_utc(dt).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse the date portion of an ISO date or datetime string.

    Visit dates arrive as ``YYYY-MM-DD`` from forms but full timestamps from
    older exports, so only the first ten characters are considered.
    """

    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed), epoch seconds or ``datetime``."""

    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return from_epoch_seconds(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def from_epoch_seconds(value: Optional[Scalar]) -> Optional[datetime]:
    """Convert ``value`` representing epoch seconds to a UTC ``datetime``."""

    if value in (None, "", b""):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch_seconds(dt: Optional[datetime]) -> Optional[float]:
    """Return the epoch seconds for ``dt`` normalised to UTC."""

    if dt is None:
        return None
    return ensure_utc(dt).timestamp()


__all__ = [
    "utc_now",
    "ensure_utc",
    "isoformat_utc",
    "parse_date",
    "parse_timestamp",
    "from_epoch_seconds",
    "to_epoch_seconds",
]
