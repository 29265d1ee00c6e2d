from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from campuscal.errors import InvalidRuleError
from campuscal.recurrence import (
    RuleEngine,
    expand,
    instance_id,
    normalize_rule,
    parse_instance_id,
)


def _event(**overrides):
    values = {
        "id": "evt-1",
        "calendar_id": "cal-1",
        "parent_event_id": None,
        "title": "Standup",
        "description": None,
        "start_time": datetime(2025, 1, 6, 10, 0),
        "end_time": datetime(2025, 1, 6, 11, 0),
        "timezone": "UTC",
        "is_all_day": False,
        "rrule": "FREQ=WEEKLY;BYDAY=MO",
        "status": "confirmed",
        "original_start": None,
        "is_cancelled": False,
        "category_id": None,
        "location_text": None,
        "created_by_id": "user-1",
        "event_metadata": {},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _exception(original: datetime, start: datetime, end: datetime, **overrides):
    return _event(
        id=overrides.pop("id", "exc-1"),
        parent_event_id="evt-1",
        rrule=None,
        original_start=original,
        start_time=start,
        end_time=end,
        **overrides,
    )


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_moved_occurrence_replaces_its_slot():
    moved = _exception(
        datetime(2025, 1, 20, 10, 0),
        datetime(2025, 1, 20, 14, 0),
        datetime(2025, 1, 20, 15, 0),
        title="Standup (moved)",
    )

    instances = expand(_event(), [moved], _utc(2025, 1, 6), _utc(2025, 1, 27, 23, 59))

    assert [i.start_time.astimezone(UTC) for i in instances] == [
        _utc(2025, 1, 6, 10),
        _utc(2025, 1, 13, 10),
        _utc(2025, 1, 20, 14),
        _utc(2025, 1, 27, 10),
    ]
    assert [i.is_exception for i in instances] == [False, False, True, False]
    assert instances[2].id == "exc-1"
    assert instances[2].title == "Standup (moved)"


def test_event_without_rule_is_returned_as_is():
    event = _event(rrule=None)

    instances = expand(event, [], _utc(2030, 1, 1), _utc(2030, 2, 1))

    assert len(instances) == 1
    assert instances[0].id == "evt-1"
    assert instances[0].is_exception is False


def test_window_bounds_are_inclusive():
    instances = expand(
        _event(), [], _utc(2025, 1, 13, 10), _utc(2025, 1, 20, 10)
    )

    assert [i.start_time.day for i in instances] == [13, 20]


def test_every_generated_occurrence_keeps_the_root_duration():
    event = _event(end_time=datetime(2025, 1, 6, 11, 30))

    instances = expand(event, [], _utc(2025, 1, 1), _utc(2025, 3, 1))

    assert instances
    assert all(i.end_time - i.start_time == timedelta(minutes=90) for i in instances)


def test_occurrence_moved_out_of_window_is_not_emitted():
    moved = _exception(
        datetime(2025, 1, 13, 10, 0),
        datetime(2025, 2, 10, 9, 0),
        datetime(2025, 2, 10, 10, 0),
    )

    instances = expand(_event(), [moved], _utc(2025, 1, 6), _utc(2025, 1, 31))

    assert [i.start_time.day for i in instances] == [6, 20, 27]
    assert not any(i.is_exception for i in instances)


def test_occurrence_moved_into_window_is_emitted():
    moved = _exception(
        datetime(2025, 2, 3, 10, 0),
        datetime(2025, 1, 15, 12, 0),
        datetime(2025, 1, 15, 13, 0),
    )

    instances = expand(_event(), [moved], _utc(2025, 1, 14), _utc(2025, 1, 16))

    assert len(instances) == 1
    assert instances[0].is_exception
    assert instances[0].original_start == _utc(2025, 2, 3, 10)


def test_cancelled_occurrence_is_excluded():
    cancelled = _exception(
        datetime(2025, 1, 13, 10, 0),
        datetime(2025, 1, 13, 10, 0),
        datetime(2025, 1, 13, 11, 0),
        is_cancelled=True,
    )

    instances = expand(_event(), [cancelled], _utc(2025, 1, 6), _utc(2025, 1, 20, 12))

    assert [i.start_time.day for i in instances] == [6, 20]


def test_generated_ids_identify_parent_and_slot():
    instances = expand(_event(), [], _utc(2025, 1, 6), _utc(2025, 1, 7))

    assert instances[0].id == "evt-1_20250106T100000Z"
    assert instances[0].parent_event_id == "evt-1"
    assert instances[0].rrule == "FREQ=WEEKLY;BYDAY=MO"


def test_expansion_keeps_wall_clock_time_across_dst():
    # 10:00 America/Chicago is 16:00 UTC before 2025-03-09 and 15:00 after.
    event = _event(
        start_time=datetime(2025, 3, 3, 16, 0),
        end_time=datetime(2025, 3, 3, 17, 0),
        timezone="America/Chicago",
    )

    instances = expand(event, [], _utc(2025, 3, 1), _utc(2025, 3, 18))

    assert [i.start_time.hour for i in instances] == [10, 10, 10]
    assert [i.start_time.astimezone(UTC).hour for i in instances] == [16, 15, 15]


def test_output_is_sorted_by_start():
    early = _exception(
        datetime(2025, 1, 27, 10, 0),
        datetime(2025, 1, 14, 8, 0),
        datetime(2025, 1, 14, 9, 0),
    )

    instances = expand(_event(), [early], _utc(2025, 1, 6), _utc(2025, 1, 31))

    starts = [i.start_time for i in instances]
    assert starts == sorted(starts)
    assert len(instances) == 4


def test_normalize_rule_strips_prefix_and_dtstart():
    rule = "DTSTART:20250106T100000Z\nRRULE:freq=daily;count=3"

    assert normalize_rule(rule) == "FREQ=DAILY;COUNT=3"


@pytest.mark.parametrize(
    "rule",
    ["", "BYDAY=MO", "FREQ=SOMETIMES", "FREQ=WEEKLY;BYDAY=XX", "EXDATE:20250106T100000Z"],
)
def test_malformed_rules_are_rejected(rule):
    with pytest.raises(InvalidRuleError):
        RuleEngine().validate(rule, _utc(2025, 1, 6, 10))


def test_with_until_drops_count():
    engine = RuleEngine()

    bounded = engine.with_until(
        "FREQ=WEEKLY;BYDAY=MO;COUNT=10", _utc(2025, 1, 26, 23, 59, 59)
    )

    assert bounded == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250126T235959Z"


def test_date_only_until_covers_the_local_day():
    engine = RuleEngine()
    anchor = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)

    rule = engine.validate("FREQ=DAILY;UNTIL=20250108", anchor)

    assert rule == "FREQ=DAILY;UNTIL=20250108T235959Z"
    occurrences = engine.occurrences_between(rule, anchor, anchor, _utc(2025, 2, 1))
    assert [o.day for o in occurrences] == [6, 7, 8]


def test_is_and_next_occurrence():
    engine = RuleEngine()
    anchor = _utc(2025, 1, 6, 10)

    assert engine.is_occurrence("FREQ=WEEKLY;BYDAY=MO", anchor, _utc(2025, 1, 13, 10))
    assert not engine.is_occurrence("FREQ=WEEKLY;BYDAY=MO", anchor, _utc(2025, 1, 14, 10))
    assert engine.next_occurrence(
        "FREQ=WEEKLY;BYDAY=MO", anchor, _utc(2025, 1, 7)
    ) == _utc(2025, 1, 13, 10)
    assert engine.next_occurrence(
        "FREQ=WEEKLY;BYDAY=MO;COUNT=1", anchor, _utc(2025, 1, 7)
    ) is None


def test_describe():
    engine = RuleEngine()

    assert (
        engine.describe("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=5")
        == "Every 2 weeks on Monday, Wednesday, 5 times"
    )
    assert engine.describe("FREQ=DAILY;UNTIL=20250301T000000Z") == "Every day until 2025-03-01"


def test_instance_id_parsing():
    occurrence = _utc(2025, 1, 6, 10)
    value = instance_id("abc-123", occurrence)

    assert value == "abc-123_20250106T100000Z"
    assert parse_instance_id(value) == ("abc-123", occurrence)
    assert parse_instance_id("abc-123") == ("abc-123", None)
    assert parse_instance_id("abc_not-a-stamp") == ("abc_not-a-stamp", None)
