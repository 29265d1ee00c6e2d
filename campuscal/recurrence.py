"""Recurrence rule handling and instance expansion.

Rules are RFC 5545 ``RRULE`` strings stored without a ``DTSTART`` line; the
anchor always comes from the owning event's start time. Parsing and
occurrence generation are delegated to :mod:`dateutil.rrule`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from typing import Any, Iterable, Sequence

from dateutil.rrule import rrule, rruleset, rrulestr

from .errors import InvalidRuleError
from .utils import ensure_aware, format_utc, localize

_RULE_PREFIX = "RRULE:"
_INSTANCE_STAMP = "%Y%m%dT%H%M%SZ"

_FREQ_UNITS = {
    "YEARLY": "year",
    "MONTHLY": "month",
    "WEEKLY": "week",
    "DAILY": "day",
    "HOURLY": "hour",
    "MINUTELY": "minute",
    "SECONDLY": "second",
}
_DAY_NAMES = {
    "MO": "Monday",
    "TU": "Tuesday",
    "WE": "Wednesday",
    "TH": "Thursday",
    "FR": "Friday",
    "SA": "Saturday",
    "SU": "Sunday",
}


def normalize_rule(rule: str) -> str:
    """Return the bare ``FREQ=...`` body of a rule string.

    Accepts an optional ``RRULE:`` prefix and ignores ``DTSTART`` lines.
    """

    lines = [line.strip() for line in (rule or "").splitlines() if line.strip()]
    bodies: list[str] = []
    for line in lines:
        upper = line.upper()
        if upper.startswith("DTSTART"):
            continue
        if upper.startswith(("EXDATE", "RDATE", "EXRULE")):
            raise InvalidRuleError(f"Unsupported recurrence property in {rule!r}")
        if upper.startswith(_RULE_PREFIX):
            line = line[len(_RULE_PREFIX):]
        bodies.append(line.upper())
    if len(bodies) != 1:
        raise InvalidRuleError(f"Expected exactly one RRULE in {rule!r}")
    body = bodies[0].strip(";")
    if "FREQ=" not in body:
        raise InvalidRuleError(f"Recurrence rule {rule!r} has no FREQ")
    return body


def _split_parts(body: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in body.split(";"):
        name, sep, value = chunk.partition("=")
        if not sep or not name:
            raise InvalidRuleError(f"Malformed recurrence rule part {chunk!r}")
        parts[name] = value
    return parts


def _join_parts(parts: dict[str, str]) -> str:
    return ";".join(f"{name}={value}" for name, value in parts.items())


def _pin_until(body: str, anchor: datetime) -> str:
    """Rewrite a floating UNTIL in UTC so it can bound an aware anchor.

    A date-only UNTIL covers that whole local day.
    """
    parts = _split_parts(body)
    value = parts.get("UNTIL")
    if not value or value.endswith("Z") or anchor.tzinfo is None:
        return body
    try:
        if len(value) == 8:
            local = datetime.combine(
                datetime.strptime(value, "%Y%m%d").date(), time(23, 59, 59)
            )
        else:
            local = datetime.strptime(value, "%Y%m%dT%H%M%S")
    except ValueError as exc:
        raise InvalidRuleError(f"Malformed UNTIL {value!r}") from exc
    parts["UNTIL"] = format_utc(local.replace(tzinfo=anchor.tzinfo))
    return _join_parts(parts)


class RuleEngine:
    """Parse, query and rewrite recurrence rules."""

    def parse(self, rule: str, anchor: datetime) -> rrule:
        body = _pin_until(normalize_rule(rule), anchor)
        try:
            parsed = rrulestr(body, dtstart=anchor)
        except (ValueError, TypeError, KeyError) as exc:
            raise InvalidRuleError(f"Invalid recurrence rule {rule!r}: {exc}") from exc
        if isinstance(parsed, rruleset):
            raise InvalidRuleError(f"Expected a single RRULE, got {rule!r}")
        return parsed

    def validate(self, rule: str, anchor: datetime) -> str:
        """Return the normalized rule or raise :class:`InvalidRuleError`."""
        self.parse(rule, anchor)
        return _pin_until(normalize_rule(rule), anchor)

    def occurrences_between(
        self,
        rule: str,
        anchor: datetime,
        start: datetime,
        end: datetime,
        *,
        exclude: Iterable[datetime] = (),
    ) -> list[datetime]:
        """Occurrence starts in ``[start, end]`` with ``exclude`` removed as EXDATEs."""
        rule_set = rruleset()
        rule_set.rrule(self.parse(rule, anchor))
        for excluded in exclude:
            rule_set.exdate(excluded)
        return list(rule_set.between(start, end, inc=True))

    def is_occurrence(self, rule: str, anchor: datetime, moment: datetime) -> bool:
        return bool(self.parse(rule, anchor).between(moment, moment, inc=True))

    def next_occurrence(
        self, rule: str, anchor: datetime, after: datetime
    ) -> datetime | None:
        return self.parse(rule, anchor).after(after, inc=True)

    def with_until(self, rule: str, until: datetime) -> str:
        """Bound ``rule`` at ``until``; a COUNT bound cannot coexist and is dropped."""
        parts = _split_parts(normalize_rule(rule))
        parts.pop("COUNT", None)
        parts["UNTIL"] = format_utc(until)
        return _join_parts(parts)

    def rebased(self, rule: str, new_anchor: datetime) -> str:
        """Reuse every option of ``rule`` for a series anchored at ``new_anchor``."""
        return self.validate(rule, new_anchor)

    def describe(self, rule: str) -> str:
        """Short English rendering such as ``Every 2 weeks on Monday``."""
        try:
            parts = _split_parts(normalize_rule(rule))
            interval = int(parts.get("INTERVAL") or 1)
        except (InvalidRuleError, ValueError):
            return rule
        unit = _FREQ_UNITS.get(parts.get("FREQ", ""))
        if unit is None:
            return rule
        text = f"Every {unit}" if interval == 1 else f"Every {interval} {unit}s"
        if parts.get("BYDAY"):
            days = [_DAY_NAMES.get(code[-2:], code) for code in parts["BYDAY"].split(",")]
            text += " on " + ", ".join(days)
        if parts.get("COUNT"):
            text += f", {parts['COUNT']} times"
        elif parts.get("UNTIL"):
            stamp = parts["UNTIL"]
            text += f" until {stamp[0:4]}-{stamp[4:6]}-{stamp[6:8]}"
        return text


default_engine = RuleEngine()


def instance_id(parent_id: str, occurrence: datetime) -> str:
    """Synthetic identity of one generated occurrence."""
    return f"{parent_id}_{ensure_aware(occurrence).astimezone(UTC).strftime(_INSTANCE_STAMP)}"


def parse_instance_id(value: str) -> tuple[str, datetime | None]:
    """Split a synthetic instance id into ``(parent id, occurrence start)``.

    Plain record ids come back unchanged with ``None``.
    """
    head, sep, tail = value.rpartition("_")
    if not sep or not head:
        return value, None
    try:
        occurrence = datetime.strptime(tail, _INSTANCE_STAMP).replace(tzinfo=UTC)
    except ValueError:
        return value, None
    return head, occurrence


@dataclass(frozen=True)
class VirtualInstance:
    id: str
    event_id: str
    parent_event_id: str | None
    calendar_id: str
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime
    timezone: str
    is_all_day: bool
    is_exception: bool
    status: str
    original_start: datetime | None = None
    rrule: str | None = None
    category_id: str | None = None
    location_text: str | None = None
    created_by_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _project(
    record: Any,
    *,
    id: str,
    start: datetime,
    end: datetime,
    parent_event_id: str | None,
    is_exception: bool,
    original_start: datetime | None,
    rrule: str | None = None,
    status: str | None = None,
) -> VirtualInstance:
    return VirtualInstance(
        id=id,
        event_id=record.id,
        parent_event_id=parent_event_id,
        calendar_id=record.calendar_id,
        title=record.title,
        description=record.description,
        start_time=start,
        end_time=end,
        timezone=record.timezone,
        is_all_day=bool(record.is_all_day),
        is_exception=is_exception,
        status=status or record.status,
        original_start=original_start,
        rrule=rrule,
        category_id=record.category_id,
        location_text=record.location_text,
        created_by_id=record.created_by_id,
        metadata=dict(record.event_metadata or {}),
    )


def project_record(record: Any) -> VirtualInstance:
    """A stored row as an instance: a series head at its anchor, an exception as itself."""
    is_exception = record.parent_event_id is not None and not record.rrule
    parent = getattr(record, "parent", None)
    return _project(
        record,
        id=record.id,
        start=localize(record.start_time, record.timezone),
        end=localize(record.end_time, record.timezone),
        parent_event_id=record.parent_event_id,
        is_exception=is_exception,
        original_start=(
            localize(record.original_start, record.timezone)
            if record.original_start is not None
            else None
        ),
        rrule=record.rrule,
        status=parent.status if is_exception and parent is not None else None,
    )


def expand(
    event: Any,
    exceptions: Sequence[Any],
    range_start: datetime,
    range_end: datetime,
    *,
    engine: RuleEngine | None = None,
) -> list[VirtualInstance]:
    """Materialize the occurrences of ``event`` that start within the window.

    ``event`` and ``exceptions`` are stored rows (naive UTC times plus an
    IANA ``timezone``). Occurrences are generated in the event's own zone so
    wall-clock times survive DST changes; every generated occurrence keeps
    the root's duration. Exception slots are excluded before generation and
    the exceptions themselves are merged in by their override start, carrying
    the series' status.
    """

    if not event.rrule:
        return [
            _project(
                event,
                id=event.id,
                start=localize(event.start_time, event.timezone),
                end=localize(event.end_time, event.timezone),
                parent_event_id=event.parent_event_id,
                is_exception=False,
                original_start=None,
            )
        ]

    engine = engine or default_engine
    anchor = localize(event.start_time, event.timezone)
    duration = event.end_time - event.start_time
    window_start = ensure_aware(range_start)
    window_end = ensure_aware(range_end)

    excluded = [
        localize(exception.original_start, event.timezone)
        for exception in exceptions
        if exception.original_start is not None
    ]
    instances = [
        _project(
            event,
            id=instance_id(event.id, occurrence),
            start=occurrence,
            end=occurrence + duration,
            parent_event_id=event.id,
            is_exception=False,
            original_start=occurrence,
            rrule=event.rrule,
        )
        for occurrence in engine.occurrences_between(
            event.rrule, anchor, window_start, window_end, exclude=excluded
        )
    ]

    for exception in exceptions:
        if exception.is_cancelled:
            continue
        zone_name = exception.timezone or event.timezone
        start = localize(exception.start_time, zone_name)
        if not window_start <= start <= window_end:
            continue
        original = (
            localize(exception.original_start, event.timezone)
            if exception.original_start is not None
            else None
        )
        instances.append(
            _project(
                exception,
                id=exception.id,
                start=start,
                end=localize(exception.end_time, zone_name),
                parent_event_id=event.id,
                is_exception=True,
                original_start=original,
                status=event.status,
            )
        )

    instances.sort(key=lambda instance: instance.start_time)
    return instances
