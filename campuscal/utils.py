"""Utility helpers for campuscal."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
import re
import unicodedata
from zoneinfo import ZoneInfo

_slug_invalid = re.compile(r"[^a-z0-9]+")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def ensure_aware(dt: datetime, zone: tzinfo | None = None) -> datetime:
    """Attach ``zone`` (UTC by default) to naive datetimes; leave aware ones alone."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=zone or UTC)
    return dt


def to_naive_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to naive UTC for storage."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def localize(stored: datetime, timezone_name: str) -> datetime:
    """Turn a stored naive-UTC value into an aware datetime in ``timezone_name``."""

    return stored.replace(tzinfo=UTC).astimezone(ZoneInfo(timezone_name))


def format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return ensure_aware(dt).astimezone(UTC).replace(microsecond=0).strftime(
        "%Y%m%dT%H%M%SZ"
    )
