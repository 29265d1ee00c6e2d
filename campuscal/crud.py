"""CRUD helpers for calendars, categories, subscriptions and channel settings."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .enums import ApprovalChannel, ApprovalMode, CalendarType, ResourceType
from .errors import NotFoundError, ValidationError
from .models import (
    ApprovalChannelConfig,
    Calendar,
    CalendarCategory,
    CalendarEvent,
    CalendarSubscription,
    EventResourceRequest,
)
from .utils import slugify, utcnow


def _enum_value(enum_cls, value: str, label: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label} {value!r}; expected one of {allowed}") from exc


def get_calendars(
    session: Session,
    *,
    is_active: bool | None = True,
    calendar_type: str | None = None,
) -> Sequence[Calendar]:
    stmt = select(Calendar).order_by(Calendar.is_default.desc(), Calendar.name.asc())
    if is_active is not None:
        stmt = stmt.where(Calendar.is_active == is_active)
    if calendar_type:
        stmt = stmt.where(Calendar.calendar_type == calendar_type)
    return session.scalars(stmt).all()


def get_calendar(session: Session, calendar_id: str) -> Calendar:
    calendar = session.get(Calendar, calendar_id)
    if calendar is None:
        raise NotFoundError(f"Calendar {calendar_id} not found")
    return calendar


def get_calendar_by_slug(session: Session, slug: str) -> Calendar | None:
    normalized = (slug or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(Calendar).where(Calendar.slug == normalized)).first()


def create_calendar(
    session: Session,
    *,
    name: str,
    calendar_type: str = CalendarType.GENERAL.value,
    color: str | None = None,
    requires_approval: bool = False,
    is_default: bool = False,
    slug: str | None = None,
) -> Calendar:
    """Create a calendar; the slug is derived from the name when not given."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Calendar name is required")
    slug = slugify(slug or name)
    if not slug:
        raise ValidationError("Invalid calendar name")
    if get_calendar_by_slug(session, slug) is not None:
        raise ValidationError(f"A calendar with slug {slug!r} already exists")
    calendar = Calendar(
        name=name,
        slug=slug,
        calendar_type=_enum_value(CalendarType, calendar_type, "calendar type"),
        requires_approval=requires_approval,
        is_default=is_default,
        created_at=utcnow(),
    )
    if color:
        calendar.color = color
    session.add(calendar)
    session.flush()
    return calendar


def update_calendar(session: Session, calendar: Calendar, **changes) -> Calendar:
    for key in ("name", "color", "requires_approval", "is_active", "is_default"):
        value = changes.get(key)
        if value is not None:
            setattr(calendar, key, value)
    if changes.get("calendar_type") is not None:
        calendar.calendar_type = _enum_value(
            CalendarType, changes["calendar_type"], "calendar type"
        )
    session.add(calendar)
    session.flush()
    return calendar


def delete_calendar(session: Session, calendar: Calendar) -> None:
    """Delete a calendar with its events; categories scoped to it are removed too."""
    for category in list(calendar.categories):
        session.delete(category)
    session.delete(calendar)
    session.flush()


def get_categories(
    session: Session, *, calendar_type: str | None = None
) -> Sequence[CalendarCategory]:
    """Categories usable on calendars of ``calendar_type``, system ones first."""
    stmt = select(CalendarCategory).order_by(
        CalendarCategory.is_system.desc(),
        CalendarCategory.sort_order.asc(),
        CalendarCategory.name.asc(),
    )
    if calendar_type:
        stmt = stmt.where(
            or_(
                CalendarCategory.calendar_type == calendar_type,
                CalendarCategory.calendar_type.is_(None),
            )
        )
    return session.scalars(stmt).all()


def get_category(session: Session, category_id: str) -> CalendarCategory:
    category = session.get(CalendarCategory, category_id)
    if category is None:
        raise NotFoundError(f"Category {category_id} not found")
    return category


def create_category(
    session: Session,
    *,
    name: str,
    color: str | None = None,
    icon: str | None = None,
    calendar_type: str | None = None,
    calendar_id: str | None = None,
    is_system: bool = False,
    sort_order: int = 0,
) -> CalendarCategory:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required")
    if calendar_type is not None:
        calendar_type = _enum_value(CalendarType, calendar_type, "calendar type")
    if calendar_id is not None:
        get_calendar(session, calendar_id)
    category = CalendarCategory(
        name=name,
        icon=icon,
        calendar_type=calendar_type,
        calendar_id=calendar_id,
        is_system=is_system,
        sort_order=sort_order,
        created_at=utcnow(),
    )
    if color:
        category.color = color
    session.add(category)
    session.flush()
    return category


def delete_category(session: Session, category: CalendarCategory) -> None:
    """Delete a category; events that used it become uncategorised."""
    if category.is_system:
        raise ValidationError("System categories cannot be deleted")
    session.query(CalendarEvent).filter(
        CalendarEvent.category_id == category.id
    ).update({CalendarEvent.category_id: None}, synchronize_session="fetch")
    session.delete(category)
    session.flush()


def get_user_subscriptions(session: Session, user_id: str) -> Sequence[CalendarSubscription]:
    stmt = (
        select(CalendarSubscription)
        .where(CalendarSubscription.user_id == user_id)
        .order_by(CalendarSubscription.created_at.asc())
    )
    return session.scalars(stmt).all()


def toggle_subscription(
    session: Session, *, user_id: str, calendar_id: str, is_visible: bool
) -> CalendarSubscription:
    """Create or update the user's visibility flag for a calendar."""
    get_calendar(session, calendar_id)
    stmt = select(CalendarSubscription).where(
        CalendarSubscription.user_id == user_id,
        CalendarSubscription.calendar_id == calendar_id,
    )
    subscription = session.scalars(stmt).first()
    if subscription is None:
        subscription = CalendarSubscription(
            user_id=user_id, calendar_id=calendar_id, created_at=utcnow()
        )
    subscription.is_visible = is_visible
    session.add(subscription)
    session.flush()
    return subscription


def visible_calendar_ids(session: Session, user_id: str) -> list[str]:
    """Active calendars the user has not hidden."""
    hidden = {
        subscription.calendar_id
        for subscription in get_user_subscriptions(session, user_id)
        if not subscription.is_visible
    }
    return [calendar.id for calendar in get_calendars(session) if calendar.id not in hidden]


def add_resource_request(
    session: Session,
    event: CalendarEvent,
    *,
    resource_type: str,
    quantity: int = 1,
    notes: str | None = None,
) -> EventResourceRequest:
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")
    request = EventResourceRequest(
        event=event,
        resource_type=_enum_value(ResourceType, resource_type, "resource type"),
        quantity=quantity,
        notes=notes,
        created_at=utcnow(),
    )
    session.add(request)
    session.flush()
    return request


def get_channel_configs(session: Session) -> Sequence[ApprovalChannelConfig]:
    stmt = select(ApprovalChannelConfig).order_by(ApprovalChannelConfig.channel_type)
    return session.scalars(stmt).all()


def upsert_channel_config(
    session: Session,
    *,
    channel_type: str,
    mode: str = ApprovalMode.REQUIRED.value,
    auto_approve_if_no_resource: bool = False,
) -> ApprovalChannelConfig:
    channel_type = _enum_value(ApprovalChannel, channel_type, "approval channel")
    mode = _enum_value(ApprovalMode, mode, "approval mode")
    stmt = select(ApprovalChannelConfig).where(
        ApprovalChannelConfig.channel_type == channel_type
    )
    config = session.scalars(stmt).first()
    if config is None:
        config = ApprovalChannelConfig(channel_type=channel_type, created_at=utcnow())
    config.mode = mode
    config.auto_approve_if_no_resource = auto_approve_if_no_resource
    config.last_modified = utcnow()
    session.add(config)
    session.flush()
    return config
