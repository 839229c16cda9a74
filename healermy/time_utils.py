"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

Number = Union[int, float]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""

    return int(utc_now().timestamp() * 1000)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_fhir_instant(value: Any) -> Optional[datetime]:
    """Parse a FHIR ``instant``/``dateTime`` string into a UTC ``datetime``.

    Returns ``None`` for empty or unparseable values.
    """

    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def sort_key_for_instant(value: Any) -> datetime:
    """Return a sortable timestamp; missing values sort as the epoch."""

    return parse_fhir_instant(value) or _EPOCH


def isoformat_z(dt: Optional[datetime] = None) -> str:
    """Render ``dt`` (default: now) the way FHIR servers expect, with ``Z``."""

    value = ensure_utc(dt or utc_now())
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def seconds_until(expires_at_ms: Optional[Number], *, now: Optional[Number] = None) -> Optional[int]:
    """Return whole seconds from ``now`` until ``expires_at_ms`` (floored at 0)."""

    if expires_at_ms is None:
        return None
    current = now_ms() if now is None else now
    return max(0, int((float(expires_at_ms) - float(current)) // 1000))


__all__ = [
    "ensure_utc",
    "isoformat_z",
    "seconds_until",
    "now_ms",
    "parse_fhir_instant",
    "sort_key_for_instant",
    "utc_now",
]
