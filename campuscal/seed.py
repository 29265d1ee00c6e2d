"""Development helpers for populating fake calendars and events."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .config import settings
from .crud import create_calendar, create_category, get_calendar_by_slug
from .database import get_session
from .enums import CalendarType, ResourceType
from .models import Calendar
from .service import create_event
from .storage import init_db
from .utils import slugify

_calendar_names = {
    CalendarType.ACADEMIC: ["Academic Calendar", "Exam Schedule", "Term Dates"],
    CalendarType.STAFF: ["Staff Meetings", "Professional Development"],
    CalendarType.TIMETABLE: ["Lab Timetable", "Lecture Timetable"],
    CalendarType.PARENT_FACING: ["Family Events", "Parent Evenings"],
    CalendarType.ATHLETICS: ["Varsity Fixtures", "Intramural Games"],
    CalendarType.GENERAL: ["Campus Life", "Community Events"],
}
_event_types = [
    "Seminar",
    "Workshop",
    "Office Hours",
    "Study Group",
    "Briefing",
    "Practice",
    "Assembly",
    "Open House",
]
_rules = [
    "FREQ=WEEKLY;BYDAY=MO",
    "FREQ=WEEKLY;BYDAY=TU,TH;COUNT=12",
    "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE",
    "FREQ=DAILY;COUNT=5",
    "FREQ=MONTHLY;BYMONTHDAY=1;COUNT=6",
]
_seed_actor = "seed-data"


def seed_fake_data(
    *,
    calendar_count: int = 3,
    max_events_per_calendar: int = 8,
    recurring_percentage: int = 40,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic calendars and events."""
    if calendar_count < 0:
        raise ValueError("calendar_count must be >= 0")
    if max_events_per_calendar < 1:
        raise ValueError("max_events_per_calendar must be >= 1")
    if not 0 <= recurring_percentage <= 100:
        raise ValueError("recurring_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"calendars": 0, "events": 0, "series": 0}

    with get_session() as session:
        for _ in range(calendar_count):
            calendar = _create_calendar(session, fake)
            stats["calendars"] += 1
            category = create_category(
                session,
                name=f"{fake.word().capitalize()} {random.choice(_event_types)}",
                calendar_id=calendar.id,
                calendar_type=calendar.calendar_type,
            )
            for _ in range(random.randint(1, max_events_per_calendar)):
                recurring = random.randint(1, 100) <= recurring_percentage
                _create_event(
                    session,
                    fake,
                    calendar=calendar,
                    category_id=category.id if random.random() < 0.5 else None,
                    recurring=recurring,
                )
                stats["events"] += 1
                stats["series"] += int(recurring)

    return stats


def _create_calendar(session: Session, fake: Faker) -> Calendar:
    for _ in range(20):
        calendar_type = random.choice(list(CalendarType))
        name = f"{fake.city()} {random.choice(_calendar_names[calendar_type])}"
        slug = slugify(name)
        if not slug or get_calendar_by_slug(session, slug):
            continue
        return create_calendar(
            session,
            name=name,
            calendar_type=calendar_type.value,
            color=fake.hex_color(),
            requires_approval=random.random() < 0.5,
        )
    raise RuntimeError("Failed to create a unique calendar name")


def _create_event(
    session: Session,
    fake: Faker,
    *,
    calendar: Calendar,
    category_id: str | None,
    recurring: bool,
) -> None:
    start_time = _random_start_time()
    end_time = start_time + timedelta(minutes=random.choice([30, 45, 60, 90, 120]))
    resource_requests = []
    if random.random() < 0.3:
        resource_requests.append(
            {"resource_type": random.choice(list(ResourceType)).value, "quantity": 1}
        )
    create_event(
        session,
        calendar_id=calendar.id,
        title=f"{fake.catch_phrase()} {random.choice(_event_types)}",
        description=fake.paragraph(nb_sentences=3),
        start_time=start_time,
        end_time=end_time,
        created_by_id=_seed_actor,
        can_publish=random.random() < 0.5,
        timezone=settings.default_timezone,
        rrule=random.choice(_rules) if recurring else None,
        category_id=category_id,
        location_text=f"{fake.last_name()} Hall, Room {random.randint(100, 450)}",
        resource_requests=resource_requests,
    )


def _random_start_time() -> datetime:
    """A naive wall-clock start on a quarter hour during the working day."""
    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    day_offset = random.randint(-7, 30)
    minutes = random.randint(8 * 4, 18 * 4) * 15
    return today + timedelta(days=day_offset, minutes=minutes)
