"""iCalendar (.ics) export of expanded calendar instances."""

from __future__ import annotations

import html
import re
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from .recurrence import VirtualInstance
from .utils import format_utc

_tag_pattern = re.compile(r"<[^>]+>")
_LINE_LIMIT = 75


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip any HTML tags."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", r"\n")
    )


def _fold(line: str) -> list[str]:
    """Split a content line at 75 octets; continuation lines start with a space."""
    encoded = line.encode("utf-8")
    if len(encoded) <= _LINE_LIMIT:
        return [line]
    folded: list[str] = []
    current = ""
    for char in line:
        if len((current + char).encode("utf-8")) > _LINE_LIMIT:
            folded.append(current)
            current = " "
        current += char
    folded.append(current)
    return folded


def _date_lines(instance: VirtualInstance) -> list[str]:
    if instance.is_all_day:
        start = instance.start_time.date()
        end = instance.end_time.date()
        if end <= start:
            end = start + timedelta(days=1)
        return [
            f"DTSTART;VALUE=DATE:{start.strftime('%Y%m%d')}",
            f"DTEND;VALUE=DATE:{end.strftime('%Y%m%d')}",
        ]
    return [
        f"DTSTART:{format_utc(instance.start_time)}",
        f"DTEND:{format_utc(instance.end_time)}",
    ]


def generate_ics(
    instances: Iterable[VirtualInstance],
    *,
    calendar_name: str | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text with one VEVENT per expanded instance."""

    dtstamp = format_utc(now or datetime.now(UTC))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//campuscal//EN",
        "CALSCALE:GREGORIAN",
    ]
    if calendar_name:
        lines.append(f"X-WR-CALNAME:{_escape_text(calendar_name)}")
    for instance in instances:
        lines.extend(
            [
                "BEGIN:VEVENT",
                f"UID:{instance.id}@campuscal",
                f"DTSTAMP:{dtstamp}",
                *_date_lines(instance),
                f"SUMMARY:{_escape_text(instance.title)}",
            ]
        )
        if instance.description:
            lines.append(f"DESCRIPTION:{_escape_text(instance.description)}")
        if instance.location_text:
            lines.append(f"LOCATION:{_escape_text(instance.location_text)}")
        if instance.original_start is not None and instance.parent_event_id:
            lines.append(f"RECURRENCE-ID:{format_utc(instance.original_start)}")
        status = "CONFIRMED" if instance.status == "confirmed" else "TENTATIVE"
        lines.append(f"STATUS:{status}")
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")

    folded: list[str] = []
    for line in lines:
        folded.extend(_fold(line))
    return "\r\n".join(folded) + "\r\n"
