from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _normalize_fraction(s: str) -> str:
    """Pad or trim fractional seconds to 6 digits."""

    digits = s[:6]
    if len(digits) < 6:
        digits = digits + "0" * (6 - len(digits))
    return digits


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        tz_sign = "+"
        tz_suffix = "00:00"
        if "+" in tail:
            frac, tz_suffix = tail.split("+", 1)
            tz_sign = "+"
        elif "-" in tail:
            frac, tz_suffix = tail.split("-", 1)
            tz_sign = "-"
        else:
            frac = tail
        frac = _normalize_fraction(frac)
        value = f"{head}.{frac}{tz_sign}{tz_suffix}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def coerce_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Accept either a datetime or an RFC3339 string and return UTC."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return parse_rfc3339(str(value))


def to_rfc3339_utc(dt: Optional[datetime], *, precise: bool = False) -> Optional[str]:
    """Serialize a datetime to RFC3339 in UTC.

    ``precise`` keeps microseconds, which matters when the value is echoed
    back to the server as an equality filter.
    """

    if dt is None:
        return None
    value = ensure_utc(dt)
    if value is None:
        return None
    if not precise:
        value = value.replace(microsecond=0)
    return value.isoformat().replace("+00:00", "Z")


def parse_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    """Return the calendar date of a ``YYYY-MM-DD`` string or timestamp."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


__all__ = [
    "UTC",
    "coerce_datetime",
    "ensure_utc",
    "parse_date",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "utc_now",
]
