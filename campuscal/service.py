"""Event operations used by the HTTP API and the CLI.

Every function takes the caller's session and leaves committing to it, so
one request is one transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, aliased

from . import approvals, series
from .config import settings
from .crud import (
    add_resource_request,
    create_category,
    delete_category,
    get_calendar,
    get_calendars,
    get_categories,
    get_category,
    get_user_subscriptions,
    toggle_subscription,
)
from .enums import ApprovalChannel, EditMode, EventStatus
from .errors import NotFoundError, ValidationError
from .models import CalendarEvent, EventApproval
from .recurrence import (
    VirtualInstance,
    default_engine,
    expand,
    parse_instance_id,
    project_record,
)
from .utils import ensure_aware, localize, to_naive_utc, utcnow

__all__ = [
    "add_resource_request",
    "approve_event",
    "create_category",
    "create_event",
    "delete_category",
    "delete_event",
    "get_categories",
    "get_event",
    "get_event_by_id",
    "get_events_in_range",
    "get_user_subscriptions",
    "reject_event",
    "resolve_event_id",
    "skip_approval",
    "submit_for_approval",
    "toggle_subscription",
    "update_event",
]

logger = logging.getLogger("uvicorn.error")


def validate_timezone(name: str | None) -> str:
    name = (name or "").strip() or settings.default_timezone
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone {name!r}") from exc
    return name


def to_storage_time(value: datetime, timezone_name: str) -> datetime:
    """Naive values are wall-clock times in ``timezone_name``; store naive UTC."""
    aware = ensure_aware(value, ZoneInfo(timezone_name))
    return to_naive_utc(aware.replace(microsecond=0))


def _check_channel(channel_type: str) -> str:
    try:
        return ApprovalChannel(channel_type).value
    except ValueError as exc:
        raise ValidationError(f"Unknown approval channel {channel_type!r}") from exc


def get_event(session: Session, event_id: str) -> CalendarEvent:
    event = session.get(CalendarEvent, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def resolve_event_id(
    session: Session, event_id: str
) -> tuple[CalendarEvent, datetime | None]:
    """Look up a stored record or the series behind a generated instance id.

    Returns the record and, for generated ids, the occurrence start.
    """
    event = session.get(CalendarEvent, event_id)
    if event is not None:
        return event, None
    parent_id, occurrence = parse_instance_id(event_id)
    if occurrence is None:
        raise NotFoundError(f"Event {event_id} not found")
    return get_event(session, parent_id), occurrence


def get_event_by_id(session: Session, event_id: str) -> VirtualInstance:
    """Return one stored event or one generated occurrence."""
    event, occurrence = resolve_event_id(session, event_id)
    if occurrence is None:
        return project_record(event)
    if not event.rrule:
        raise NotFoundError(f"Event {event_id} not found")
    for exception in event.exceptions:
        if exception.original_start == to_naive_utc(occurrence):
            if exception.is_cancelled:
                raise NotFoundError(f"Occurrence {event_id} was cancelled")
            return project_record(exception)
    instances = expand(event, [], occurrence, occurrence)
    if not instances:
        raise NotFoundError(f"Event {event_id} not found")
    return instances[0]


def create_event(
    session: Session,
    *,
    calendar_id: str,
    title: str,
    start_time: datetime,
    end_time: datetime,
    created_by_id: str,
    can_publish: bool = False,
    description: str | None = None,
    timezone: str | None = None,
    is_all_day: bool = False,
    rrule: str | None = None,
    category_id: str | None = None,
    location_text: str | None = None,
    building_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    resource_requests: Iterable[Mapping[str, Any]] = (),
) -> CalendarEvent:
    """Create a standalone event or a series root.

    Publishers and calendars without approval get ``confirmed`` events;
    everything else starts as a ``draft``.
    """
    calendar = get_calendar(session, calendar_id)
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    zone_name = validate_timezone(timezone)
    start = to_storage_time(start_time, zone_name)
    end = to_storage_time(end_time, zone_name)
    if end < start:
        raise ValidationError("end_time must not be before start_time")
    if category_id:
        get_category(session, category_id)
    rule = None
    if rrule:
        rule = default_engine.validate(rrule, localize(start, zone_name))

    status = approvals.initial_status(
        can_publish=can_publish, requires_approval=calendar.requires_approval
    )
    event = CalendarEvent(
        calendar_id=calendar.id,
        title=title,
        description=description,
        start_time=start,
        end_time=end,
        timezone=zone_name,
        is_all_day=is_all_day,
        rrule=rule,
        status=status.value,
        category_id=category_id,
        location_text=location_text,
        building_id=building_id,
        event_metadata=dict(metadata or {}),
        created_by_id=created_by_id,
        created_at=utcnow(),
        last_modified=utcnow(),
    )
    session.add(event)
    session.flush()
    for request in resource_requests:
        add_resource_request(
            session,
            event,
            resource_type=request.get("resource_type", ""),
            quantity=request.get("quantity", 1),
            notes=request.get("notes"),
        )
    logger.info("Created %s event %s on calendar %s", status.value, event.id, calendar.id)
    return event


def _approval_target(session: Session, event_id: str) -> CalendarEvent:
    event, _ = resolve_event_id(session, event_id)
    return event


def submit_for_approval(
    session: Session, event_id: str, *, is_creator: bool
) -> list[EventApproval]:
    event = _approval_target(session, event_id)
    return approvals.submit_for_approval(session, event, is_creator=is_creator)


def approve_event(
    session: Session, event_id: str, channel_type: str, *, approver_id: str
) -> CalendarEvent:
    event = _approval_target(session, event_id)
    approvals.approve_channel(
        session, event, _check_channel(channel_type), approver_id=approver_id
    )
    return event


def reject_event(
    session: Session,
    event_id: str,
    channel_type: str,
    *,
    approver_id: str,
    reason: str | None = None,
) -> CalendarEvent:
    event = _approval_target(session, event_id)
    approvals.reject_channel(
        session,
        event,
        _check_channel(channel_type),
        approver_id=approver_id,
        reason=reason,
    )
    return event


def skip_approval(
    session: Session, event_id: str, channel_type: str, *, actor_id: str
) -> CalendarEvent:
    event = _approval_target(session, event_id)
    approvals.skip_channel(session, event, _check_channel(channel_type), actor_id=actor_id)
    return event


def _normalize_changes(
    session: Session, event: CalendarEvent, changes: Mapping[str, Any]
) -> dict[str, Any]:
    normalized = dict(changes)
    if "metadata" in normalized:
        normalized["event_metadata"] = normalized.pop("metadata")
    if "title" in normalized:
        title = (normalized["title"] or "").strip()
        if not title:
            raise ValidationError("title is required")
        normalized["title"] = title
    if "timezone" in normalized:
        normalized["timezone"] = validate_timezone(normalized["timezone"])
    if normalized.get("category_id"):
        get_category(session, normalized["category_id"])
    zone_name = normalized.get("timezone") or event.timezone
    for key in ("start_time", "end_time"):
        if normalized.get(key) is not None:
            normalized[key] = to_storage_time(normalized[key], zone_name)
        else:
            normalized.pop(key, None)
    return normalized


def update_event(
    session: Session,
    event_id: str,
    changes: Mapping[str, Any],
    *,
    actor_id: str,
    mode: EditMode | str = EditMode.ALL,
    occurrence_start: datetime | None = None,
) -> CalendarEvent:
    """Edit an event; recurring events honour ``mode``.

    ``event_id`` may be a generated instance id, in which case it names
    the occurrence being edited.
    """
    event, occurrence = resolve_event_id(session, event_id)
    occurrence = occurrence_start or occurrence
    result = series.edit_instance(
        session,
        event,
        _normalize_changes(session, event, changes),
        EditMode(mode),
        actor_id=actor_id,
        occurrence_start=occurrence,
    )
    logger.info(
        "Event %s updated by %s (mode=%s) -> %s",
        event_id,
        actor_id,
        EditMode(mode).value,
        result.id,
    )
    return result


def delete_event(
    session: Session,
    event_id: str,
    *,
    actor_id: str,
    mode: EditMode | str = EditMode.ALL,
    occurrence_start: datetime | None = None,
) -> CalendarEvent | None:
    event, occurrence = resolve_event_id(session, event_id)
    return series.delete_instance(
        session,
        event,
        EditMode(mode),
        actor_id=actor_id,
        occurrence_start=occurrence_start or occurrence,
    )


def _check_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    zone = ZoneInfo(settings.default_timezone)
    start = ensure_aware(start, zone)
    end = ensure_aware(end, zone)
    if end < start:
        raise ValidationError("end must not be before start")
    if end - start > settings.max_range:
        raise ValidationError(
            f"Requested range exceeds {settings.max_range_days} days"
        )
    return start, end


def _check_statuses(statuses: Iterable[str] | None) -> set[str] | None:
    if not statuses:
        return None
    checked = set()
    for status in statuses:
        try:
            checked.add(EventStatus(status).value)
        except ValueError as exc:
            raise ValidationError(f"Unknown event status {status!r}") from exc
    return checked


def get_events_in_range(
    session: Session,
    *,
    start: datetime,
    end: datetime,
    calendar_ids: Iterable[str] | None = None,
    category_id: str | None = None,
    statuses: Iterable[str] | None = None,
    created_by_id: str | None = None,
) -> list[VirtualInstance]:
    """Concrete instances starting in ``[start, end]`` across calendars.

    Without ``calendar_ids`` every active calendar is searched. Series are
    expanded one root at a time and the results re-sorted together.
    """
    window_start, window_end = _check_window(start, end)
    wanted_statuses = _check_statuses(statuses)
    if calendar_ids:
        calendar_ids = list(dict.fromkeys(calendar_ids))
    else:
        calendar_ids = [calendar.id for calendar in get_calendars(session)]
    if not calendar_ids:
        return []
    naive_start = to_naive_utc(window_start)
    naive_end = to_naive_utc(window_end)

    standalone = session.scalars(
        select(CalendarEvent)
        .where(CalendarEvent.calendar_id.in_(calendar_ids))
        .where(CalendarEvent.rrule.is_(None))
        .where(CalendarEvent.parent_event_id.is_(None))
        .where(CalendarEvent.start_time <= naive_end)
        .where(CalendarEvent.end_time >= naive_start)
    ).all()
    # An exception can be moved before its series anchor.
    moved = aliased(CalendarEvent)
    moved_into_window = (
        select(moved.parent_event_id)
        .where(moved.parent_event_id.is_not(None))
        .where(moved.rrule.is_(None))
        .where(moved.is_cancelled.is_(False))
        .where(moved.start_time >= naive_start)
        .where(moved.start_time <= naive_end)
    )
    heads = session.scalars(
        select(CalendarEvent)
        .where(CalendarEvent.calendar_id.in_(calendar_ids))
        .where(CalendarEvent.rrule.is_not(None))
        .where(
            or_(
                CalendarEvent.start_time <= naive_end,
                CalendarEvent.id.in_(moved_into_window),
            )
        )
    ).all()
    exceptions_by_parent: dict[str, list[CalendarEvent]] = defaultdict(list)
    if heads:
        rows = session.scalars(
            select(CalendarEvent)
            .where(CalendarEvent.parent_event_id.in_([head.id for head in heads]))
            .where(CalendarEvent.rrule.is_(None))
        ).all()
        for row in rows:
            exceptions_by_parent[row.parent_event_id].append(row)

    instances: list[VirtualInstance] = []
    for event in standalone:
        instances.extend(expand(event, [], window_start, window_end))
    for head in heads:
        instances.extend(
            expand(head, exceptions_by_parent[head.id], window_start, window_end)
        )

    if category_id:
        instances = [i for i in instances if i.category_id == category_id]
    if wanted_statuses:
        instances = [i for i in instances if i.status in wanted_statuses]
    if created_by_id:
        instances = [i for i in instances if i.created_by_id == created_by_id]
    instances.sort(key=lambda instance: instance.start_time)
    return instances


def describe_event(event: CalendarEvent) -> str | None:
    if not event.rrule:
        return None
    return default_engine.describe(event.rrule)

