from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select

from campuscal import database
from campuscal.errors import InvalidStateError, NotFoundError, ValidationError
from campuscal.models import CalendarEvent
from campuscal.recurrence import instance_id
from campuscal.service import (
    create_event,
    delete_event,
    get_events_in_range,
    update_event,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def _window(session, start=_utc(2025, 1, 6), end=_utc(2025, 2, 3, 23, 59)):
    return get_events_in_range(session, start=start, end=end)


def _event_count(session) -> int:
    return session.scalar(select(func.count()).select_from(CalendarEvent))


def test_edit_this_creates_exception_and_keeps_root(session, weekly_series):
    exception = update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        {"start_time": datetime(2025, 1, 20, 14, 0), "end_time": datetime(2025, 1, 20, 15, 0)},
        mode="this",
        actor_id="user-2",
    )

    assert exception.parent_event_id == weekly_series.id
    assert exception.original_start == datetime(2025, 1, 20, 10, 0)
    assert exception.rrule is None
    assert exception.title == "Standup"
    assert weekly_series.rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert weekly_series.start_time == datetime(2025, 1, 6, 10, 0)

    instances = _window(session, end=_utc(2025, 1, 27, 23, 59))
    assert [i.start_time.astimezone(UTC).hour for i in instances] == [10, 10, 14, 10]
    assert [i.is_exception for i in instances] == [False, False, True, False]


def test_edit_this_twice_updates_the_same_exception(session, weekly_series):
    occurrence = instance_id(weekly_series.id, _utc(2025, 1, 13, 10))
    first = update_event(session, occurrence, {"title": "First"}, mode="this", actor_id="u")
    second = update_event(session, occurrence, {"title": "Second"}, mode="this", actor_id="u")

    assert first.id == second.id
    assert len(weekly_series.exceptions) == 1
    assert weekly_series.exceptions[0].title == "Second"


def test_moving_only_the_start_keeps_the_duration(session, weekly_series):
    exception = update_event(
        session,
        weekly_series.id,
        {"start_time": datetime(2025, 1, 13, 12, 0)},
        mode="this",
        actor_id="u",
        occurrence_start=_utc(2025, 1, 13, 10),
    )

    assert exception.end_time == datetime(2025, 1, 13, 13, 0)


def test_single_occurrence_cannot_get_a_rule(session, weekly_series):
    with pytest.raises(ValidationError):
        update_event(
            session,
            instance_id(weekly_series.id, _utc(2025, 1, 13, 10)),
            {"rrule": "FREQ=DAILY"},
            mode="this",
            actor_id="u",
        )


def test_edit_this_and_following_splits_the_series(session, weekly_series):
    successor = update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        {"title": "Planning"},
        mode="this_and_following",
        actor_id="user-2",
    )

    assert successor.id != weekly_series.id
    assert successor.parent_event_id is None
    assert successor.start_time == datetime(2025, 1, 20, 10, 0)
    assert successor.end_time == datetime(2025, 1, 20, 11, 0)
    assert successor.rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert successor.created_by_id == "user-2"
    assert weekly_series.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250119T235959Z"

    instances = _window(session)
    assert [i.start_time.day for i in instances] == [6, 13, 20, 27, 3]
    assert [i.title for i in instances] == [
        "Standup",
        "Standup",
        "Planning",
        "Planning",
        "Planning",
    ]


def test_split_preserves_original_until_and_drops_count(session, calendar):
    bounded = create_event(
        session,
        calendar_id=calendar.id,
        title="Bounded",
        start_time=datetime(2025, 1, 6, 10, 0),
        end_time=datetime(2025, 1, 6, 11, 0),
        timezone="UTC",
        rrule="FREQ=WEEKLY;BYDAY=MO;UNTIL=20250224T235959Z",
        created_by_id="u",
    )
    counted = create_event(
        session,
        calendar_id=calendar.id,
        title="Counted",
        start_time=datetime(2025, 1, 6, 12, 0),
        end_time=datetime(2025, 1, 6, 13, 0),
        timezone="UTC",
        rrule="FREQ=WEEKLY;BYDAY=MO;COUNT=10",
        created_by_id="u",
    )

    new_bounded = update_event(
        session,
        instance_id(bounded.id, _utc(2025, 1, 20, 10)),
        {},
        mode="this_and_following",
        actor_id="u",
    )
    update_event(
        session,
        instance_id(counted.id, _utc(2025, 1, 20, 12)),
        {},
        mode="this_and_following",
        actor_id="u",
    )

    assert new_bounded.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250224T235959Z"
    assert bounded.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250119T235959Z"
    assert counted.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250119T235959Z"


def test_split_drops_exceptions_after_the_split(session, weekly_series):
    for day in (13, 27):
        update_event(
            session,
            instance_id(weekly_series.id, _utc(2025, 1, day, 10)),
            {"title": f"Moved {day}"},
            mode="this",
            actor_id="u",
        )

    update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        {"title": "Later"},
        mode="this_and_following",
        actor_id="u",
    )

    assert [e.original_start for e in weekly_series.exceptions] == [
        datetime(2025, 1, 13, 10, 0)
    ]


def test_split_at_first_occurrence_edits_whole_series(session, weekly_series):
    result = update_event(
        session,
        weekly_series.id,
        {"title": "Renamed"},
        mode="this_and_following",
        actor_id="u",
    )

    assert result.id == weekly_series.id
    assert weekly_series.title == "Renamed"
    assert _event_count(session) == 1


def test_this_and_following_on_exception_splits_at_its_slot(session, weekly_series):
    exception = update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        {"start_time": datetime(2025, 1, 20, 15, 0)},
        mode="this",
        actor_id="u",
    )

    successor = update_event(
        session, exception.id, {"title": "Split"}, mode="this_and_following", actor_id="u"
    )

    assert successor.start_time == datetime(2025, 1, 20, 10, 0)
    assert successor.parent_event_id is None
    assert weekly_series.exceptions == []


def test_all_mode_on_exception_edits_the_root(session, weekly_series):
    exception = update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 13, 10)),
        {"title": "Only once"},
        mode="this",
        actor_id="u",
    )

    result = update_event(session, exception.id, {"title": "Renamed"}, mode="all", actor_id="u")

    assert result.id == weekly_series.id
    assert weekly_series.title == "Renamed"
    assert exception.title == "Only once"


def test_standalone_event_ignores_mode(session, calendar):
    event = create_event(
        session,
        calendar_id=calendar.id,
        title="Open day",
        start_time=datetime(2025, 3, 1, 9, 0),
        end_time=datetime(2025, 3, 1, 17, 0),
        timezone="UTC",
        created_by_id="u",
    )

    for mode in ("this", "this_and_following"):
        result = update_event(session, event.id, {"title": mode}, mode=mode, actor_id="u")
        assert result.id == event.id
        assert event.title == mode
    assert event.children == []


def test_editing_a_non_occurrence_is_rejected(session, weekly_series):
    with pytest.raises(InvalidStateError):
        update_event(
            session,
            weekly_series.id,
            {"title": "Tuesday?"},
            mode="this",
            actor_id="u",
            occurrence_start=_utc(2025, 1, 14, 10),
        )


def test_splitting_under_a_parent_without_rule_is_rejected(session, calendar):
    parent = CalendarEvent(
        calendar_id=calendar.id,
        title="Parent",
        start_time=datetime(2025, 1, 6, 10, 0),
        end_time=datetime(2025, 1, 6, 11, 0),
        timezone="UTC",
        status="confirmed",
        created_by_id="u",
    )
    child = CalendarEvent(
        calendar_id=calendar.id,
        parent=parent,
        title="Child",
        start_time=datetime(2025, 1, 13, 10, 0),
        end_time=datetime(2025, 1, 13, 11, 0),
        original_start=datetime(2025, 1, 13, 10, 0),
        timezone="UTC",
        status="confirmed",
        created_by_id="u",
    )
    session.add_all([parent, child])
    session.flush()

    with pytest.raises(InvalidStateError):
        update_event(session, child.id, {"title": "x"}, mode="this_and_following", actor_id="u")


def test_missing_event_is_not_found(session):
    with pytest.raises(NotFoundError):
        update_event(session, "missing", {"title": "x"}, actor_id="u")


def test_clearing_the_rule_removes_exceptions(session, weekly_series):
    update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 13, 10)),
        {"title": "Moved"},
        mode="this",
        actor_id="u",
    )

    update_event(session, weekly_series.id, {"rrule": None}, mode="all", actor_id="u")

    assert weekly_series.rrule is None
    assert weekly_series.children == []
    assert _event_count(session) == 1


def test_end_before_start_is_rejected(session, weekly_series):
    with pytest.raises(ValidationError):
        update_event(
            session,
            weekly_series.id,
            {"end_time": datetime(2025, 1, 6, 9, 0)},
            mode="all",
            actor_id="u",
        )


def test_delete_this_cancels_one_occurrence(session, weekly_series):
    cancelled = delete_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        mode="this",
        actor_id="u",
    )

    assert cancelled.is_cancelled
    assert [i.start_time.day for i in _window(session)] == [6, 13, 27, 3]


def test_delete_this_on_existing_exception_cancels_it(session, weekly_series):
    exception = update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        {"start_time": datetime(2025, 1, 21, 10, 0)},
        mode="this",
        actor_id="u",
    )

    delete_event(session, exception.id, mode="this", actor_id="u")

    assert exception.is_cancelled
    assert [i.start_time.day for i in _window(session)] == [6, 13, 27, 3]


def test_delete_this_and_following_truncates(session, weekly_series):
    delete_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        mode="this_and_following",
        actor_id="u",
    )

    assert weekly_series.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20250119T235959Z"
    assert [i.start_time.day for i in _window(session)] == [6, 13]


def test_delete_all_from_an_occurrence_removes_the_series(session, weekly_series):
    update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 13, 10)),
        {"title": "Moved"},
        mode="this",
        actor_id="u",
    )

    delete_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 20, 10)),
        mode="all",
        actor_id="u",
    )

    assert _event_count(session) == 0
    assert _window(session) == []


def test_exception_moved_before_the_anchor_is_returned(session, weekly_series):
    update_event(
        session,
        instance_id(weekly_series.id, _utc(2025, 1, 6, 10)),
        {"start_time": datetime(2025, 1, 3, 10, 0)},
        mode="this",
        actor_id="u",
    )

    instances = _window(session, start=_utc(2025, 1, 1), end=_utc(2025, 1, 4))

    assert [(i.is_exception, i.start_time) for i in instances] == [
        (True, _utc(2025, 1, 3, 10))
    ]
    assert instances[0].original_start == _utc(2025, 1, 6, 10)


def test_failed_split_leaves_the_series_untouched(session, weekly_series, monkeypatch):
    series_id = weekly_series.id
    session.commit()

    with pytest.raises(RuntimeError):
        with database.get_session() as unit:
            real_flush = unit.flush

            def flush(*args, **kwargs):
                real_flush(*args, **kwargs)
                raise RuntimeError("connection lost")

            monkeypatch.setattr(unit, "flush", flush)
            update_event(
                unit,
                instance_id(series_id, _utc(2025, 1, 20, 10)),
                {"title": "Planning"},
                mode="this_and_following",
                actor_id="u",
            )
    monkeypatch.undo()

    fresh = database.SessionLocal()
    assert _event_count(fresh) == 1
    assert fresh.get(CalendarEvent, series_id).rrule == "FREQ=WEEKLY;BYDAY=MO"
