from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from campuscal.utils import (
    ensure_aware,
    format_utc,
    localize,
    slugify,
    to_naive_utc,
    utcnow,
)


def test_slugify_handles_whitespace_and_unicode():
    assert slugify("  Café au Lait  ") == "cafe-au-lait"
    assert slugify("Hello!! World??") == "hello-world"
    assert slugify("") == ""


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


def test_ensure_aware_only_touches_naive_values():
    plus_two = timezone(timedelta(hours=2))
    aware = datetime(2025, 1, 1, 12, 0, tzinfo=plus_two)

    assert ensure_aware(aware) is aware
    assert ensure_aware(datetime(2025, 1, 1, 12, 0)).tzinfo is UTC


def test_storage_round_trip_through_a_zone():
    stored = datetime(2025, 7, 1, 14, 0)

    local = localize(stored, "America/Chicago")

    assert (local.hour, local.utcoffset()) == (9, timedelta(hours=-5))
    assert to_naive_utc(local) == stored
    assert to_naive_utc(None) is None


def test_format_utc():
    plus_two = timezone(timedelta(hours=2))

    assert format_utc(datetime(2025, 1, 6, 12, 0, 30, 500, tzinfo=plus_two)) == (
        "20250106T100030Z"
    )
    assert format_utc(datetime(2025, 1, 6, 10, 0)) == "20250106T100000Z"
