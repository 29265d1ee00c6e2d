"""Edits and deletions against recurring series.

Three granularities are supported: a single occurrence (stored as an
exception row), this-and-following (the series is split in two) and the
whole series.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from .approvals import copy_approvals
from .enums import EditMode, EventKind
from .errors import InvalidStateError, NotFoundError, ValidationError
from .models import CalendarEvent
from .recurrence import RuleEngine, default_engine
from .utils import ensure_aware, localize, to_naive_utc, utcnow

# Use uvicorn's error logger so split/cancel messages get the level prefix.
logger = logging.getLogger("uvicorn.error")

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "start_time",
        "end_time",
        "timezone",
        "is_all_day",
        "rrule",
        "category_id",
        "location_text",
        "building_id",
        "event_metadata",
    }
)
_COPIED_FIELDS = (
    "title",
    "description",
    "timezone",
    "is_all_day",
    "category_id",
    "location_text",
    "building_id",
)


def resolve_root(event: CalendarEvent) -> CalendarEvent:
    """Follow parent links up to the record that owns the whole series."""
    seen = {event.id}
    current = event
    while current.parent_event_id is not None:
        parent = current.parent
        if parent is None:
            raise NotFoundError(f"Parent event {current.parent_event_id} not found")
        if parent.id in seen:
            raise InvalidStateError(f"Event {event.id} has a cyclic parent chain")
        seen.add(parent.id)
        current = parent
    return current


def _series_of(event: CalendarEvent) -> CalendarEvent:
    """The record whose rule generated ``event``'s occurrence."""
    if event.kind != EventKind.EXCEPTION:
        return event
    if event.parent is None:
        raise NotFoundError(f"Parent event {event.parent_event_id} not found")
    return event.parent


def _merged_times(
    start: datetime, end: datetime, changes: dict[str, Any]
) -> tuple[datetime, datetime]:
    """New ``(start, end)``; moving only the start keeps the duration."""
    new_start = changes.get("start_time") or start
    if changes.get("end_time") is not None:
        new_end = changes["end_time"]
    else:
        new_end = new_start + (end - start)
    if new_end < new_start:
        raise ValidationError("end_time must not be before start_time")
    return new_start, new_end


def _check_changes(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    return changes


def _local_occurrence(series: CalendarEvent, occurrence: datetime) -> datetime:
    return ensure_aware(occurrence).astimezone(ZoneInfo(series.timezone))


def _require_occurrence(
    engine: RuleEngine, series: CalendarEvent, occurrence: datetime
) -> None:
    anchor = localize(series.start_time, series.timezone)
    if not engine.is_occurrence(series.rrule, anchor, occurrence):
        raise InvalidStateError(
            f"{occurrence.isoformat()} is not an occurrence of event {series.id}"
        )


def _exception_for(series: CalendarEvent, original_start: datetime) -> CalendarEvent | None:
    for exception in series.exceptions:
        if exception.original_start == original_start:
            return exception
    return None


def _apply_fields(record: CalendarEvent, changes: dict[str, Any]) -> None:
    start, end = _merged_times(record.start_time, record.end_time, changes)
    record.start_time = start
    record.end_time = end
    for key in _COPIED_FIELDS:
        if key in changes:
            setattr(record, key, changes[key])
    if "event_metadata" in changes:
        record.event_metadata = dict(changes["event_metadata"] or {})
    record.last_modified = utcnow()


def _edit_whole(
    session: Session,
    record: CalendarEvent,
    changes: dict[str, Any],
    engine: RuleEngine,
) -> CalendarEvent:
    _apply_fields(record, changes)
    if "rrule" in changes:
        if changes["rrule"]:
            anchor = localize(record.start_time, record.timezone)
            record.rrule = engine.validate(changes["rrule"], anchor)
        elif record.rrule:
            # A series turned standalone has no slots left to override.
            for exception in record.exceptions:
                record.children.remove(exception)
                session.delete(exception)
            record.rrule = None
    session.add(record)
    session.flush()
    return record


def _edit_occurrence(
    session: Session,
    series: CalendarEvent,
    occurrence: datetime,
    changes: dict[str, Any],
    *,
    actor_id: str,
    cancel: bool = False,
) -> CalendarEvent:
    if changes.get("rrule"):
        raise ValidationError("A single occurrence cannot carry its own recurrence rule")
    changes = {key: value for key, value in changes.items() if key != "rrule"}
    original_start = to_naive_utc(occurrence)
    existing = _exception_for(series, original_start)
    if existing is not None:
        _apply_fields(existing, changes)
        existing.is_cancelled = cancel
        session.add(existing)
        session.flush()
        return existing

    start, end = _merged_times(original_start, original_start + series.duration, changes)
    exception = CalendarEvent(
        calendar_id=series.calendar_id,
        parent_event_id=series.id,
        start_time=start,
        end_time=end,
        rrule=None,
        status=series.status,
        original_start=original_start,
        is_cancelled=cancel,
        event_metadata=dict(
            changes.get("event_metadata") or series.event_metadata or {}
        ),
        created_by_id=actor_id,
        **{key: changes.get(key, getattr(series, key)) for key in _COPIED_FIELDS},
    )
    series.children.append(exception)
    session.add(exception)
    session.flush()
    logger.info(
        "%s occurrence %s of event %s",
        "Cancelled" if cancel else "Detached",
        occurrence.isoformat(),
        series.id,
    )
    return exception


def _truncate(
    session: Session,
    series: CalendarEvent,
    occurrence: datetime,
    engine: RuleEngine,
) -> None:
    """End ``series`` the day before ``occurrence`` and drop its later exceptions."""
    until = datetime.combine(
        occurrence.date() - timedelta(days=1),
        time(23, 59, 59),
        tzinfo=occurrence.tzinfo,
    )
    series.rrule = engine.with_until(series.rrule, until)
    series.last_modified = utcnow()
    for exception in list(series.exceptions):
        if localize(exception.original_start, series.timezone) > until:
            series.children.remove(exception)
            session.delete(exception)
    session.add(series)


def _split(
    session: Session,
    series: CalendarEvent,
    occurrence: datetime,
    changes: dict[str, Any],
    *,
    actor_id: str,
    engine: RuleEngine,
) -> CalendarEvent:
    if not series.rrule:
        raise InvalidStateError(
            f"Event {series.id} has no recurrence rule and cannot be split"
        )
    anchor = localize(series.start_time, series.timezone)
    if occurrence <= anchor:
        return _edit_whole(session, series, changes, engine)

    original_start = to_naive_utc(occurrence)
    start, end = _merged_times(original_start, original_start + series.duration, changes)
    zone_name = changes.get("timezone") or series.timezone
    new_anchor = localize(start, zone_name)
    if changes.get("rrule"):
        new_rule = engine.validate(changes["rrule"], new_anchor)
    else:
        new_rule = engine.rebased(series.rrule, new_anchor)
    if engine.next_occurrence(new_rule, new_anchor, new_anchor) is None:
        raise ValidationError("The new series would have no occurrences")

    _truncate(session, series, occurrence, engine)
    successor = CalendarEvent(
        calendar_id=series.calendar_id,
        parent_event_id=None,
        start_time=start,
        end_time=end,
        rrule=new_rule,
        event_metadata=dict(
            changes.get("event_metadata") or series.event_metadata or {}
        ),
        created_by_id=actor_id,
        **{key: changes.get(key, getattr(series, key)) for key in _COPIED_FIELDS},
    )
    session.add(successor)
    session.add_all(copy_approvals(series, successor))
    session.flush()
    logger.info(
        "Split series %s at %s; following occurrences continue as %s",
        series.id,
        occurrence.isoformat(),
        successor.id,
    )
    return successor


def edit_instance(
    session: Session,
    event: CalendarEvent,
    changes: dict[str, Any],
    mode: EditMode | str,
    *,
    actor_id: str,
    occurrence_start: datetime | None = None,
    engine: RuleEngine | None = None,
) -> CalendarEvent:
    """Apply ``changes`` to one occurrence, the rest of the series, or all of it.

    ``occurrence_start`` names the unmodified start of the occurrence being
    edited; it defaults to the record's own slot. Datetimes in ``changes``
    are naive UTC. Returns the record that now represents the edit: the
    root, the exception row, or the new series created by a split.
    """
    mode = EditMode(mode)
    engine = engine or default_engine
    changes = _check_changes(dict(changes))
    kind = event.kind

    if kind == EventKind.STANDALONE:
        return _edit_whole(session, event, changes, engine)
    if mode == EditMode.ALL:
        return _edit_whole(session, resolve_root(event), changes, engine)

    series = _series_of(event)
    if kind == EventKind.EXCEPTION:
        if mode == EditMode.THIS:
            if changes.get("rrule"):
                raise ValidationError(
                    "A single occurrence cannot carry its own recurrence rule"
                )
            return _edit_whole(session, event, changes, engine)
        if not series.rrule:
            raise InvalidStateError(
                f"Parent event {series.id} of {event.id} has no recurrence rule"
            )
        occurrence = localize(event.original_start, series.timezone)
        return _split(
            session, series, occurrence, changes, actor_id=actor_id, engine=engine
        )

    occurrence = _local_occurrence(
        series, occurrence_start or localize(series.start_time, series.timezone)
    )
    _require_occurrence(engine, series, occurrence)
    if mode == EditMode.THIS:
        return _edit_occurrence(session, series, occurrence, changes, actor_id=actor_id)
    return _split(session, series, occurrence, changes, actor_id=actor_id, engine=engine)


def delete_instance(
    session: Session,
    event: CalendarEvent,
    mode: EditMode | str,
    *,
    actor_id: str,
    occurrence_start: datetime | None = None,
    engine: RuleEngine | None = None,
) -> CalendarEvent | None:
    """Delete one occurrence, the rest of the series, or all of it.

    Cancelling a single occurrence keeps a cancelled exception row so the
    slot stays excluded. Returns the surviving record touched, if any.
    """
    mode = EditMode(mode)
    engine = engine or default_engine
    kind = event.kind

    if kind == EventKind.STANDALONE or mode == EditMode.ALL:
        target = event if kind == EventKind.STANDALONE else resolve_root(event)
        session.delete(target)
        session.flush()
        logger.info("Deleted event %s", target.id)
        return None

    series = _series_of(event)
    if kind == EventKind.EXCEPTION:
        if mode == EditMode.THIS:
            event.is_cancelled = True
            event.last_modified = utcnow()
            session.add(event)
            session.flush()
            return event
        occurrence = localize(event.original_start, series.timezone)
    else:
        occurrence = _local_occurrence(
            series, occurrence_start or localize(series.start_time, series.timezone)
        )
        _require_occurrence(engine, series, occurrence)
        if mode == EditMode.THIS:
            return _edit_occurrence(
                session, series, occurrence, {}, actor_id=actor_id, cancel=True
            )

    if not series.rrule:
        raise InvalidStateError(
            f"Event {series.id} has no recurrence rule and cannot be truncated"
        )
    if occurrence <= localize(series.start_time, series.timezone):
        session.delete(series)
        session.flush()
        logger.info("Deleted event %s", series.id)
        return None
    _truncate(session, series, occurrence, engine)
    session.flush()
    logger.info("Ended series %s before %s", series.id, occurrence.isoformat())
    return series
