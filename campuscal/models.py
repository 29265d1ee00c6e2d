"""SQLAlchemy models for campuscal."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .enums import ApprovalMode, ApprovalStatus, EventKind, EventStatus
from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Calendar(Base):
    __tablename__ = "calendars"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    calendar_type = Column(String(32), nullable=False, default="general")
    color = Column(String(16), nullable=False, default="#3b82f6")
    requires_approval = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    events = relationship(
        "CalendarEvent", back_populates="calendar", cascade="all, delete-orphan"
    )
    categories = relationship("CalendarCategory", back_populates="calendar")
    subscriptions = relationship(
        "CalendarSubscription", back_populates="calendar", cascade="all, delete-orphan"
    )


class CalendarCategory(Base):
    __tablename__ = "calendar_categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(64), nullable=False)
    color = Column(String(16), nullable=False, default="#6b7280")
    icon = Column(String(64), nullable=True)
    calendar_type = Column(String(32), nullable=True)
    calendar_id = Column(String(36), ForeignKey("calendars.id"), nullable=True)
    is_system = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    calendar = relationship("Calendar", back_populates="categories")


class CalendarEvent(Base):
    """A stored calendar row.

    The same table holds standalone events, series roots, legacy split-off
    series heads and single-occurrence exceptions; ``kind`` tells them apart.
    """

    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("ix_calendar_events_calendar_start", "calendar_id", "start_time"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    calendar_id = Column(String(36), ForeignKey("calendars.id"), nullable=False)
    parent_event_id = Column(
        String(36), ForeignKey("calendar_events.id"), nullable=True, index=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    timezone = Column(String(64), nullable=False)
    is_all_day = Column(Boolean, default=False, nullable=False)
    rrule = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=EventStatus.DRAFT.value)
    original_start = Column(DateTime, nullable=True)
    is_cancelled = Column(Boolean, default=False, nullable=False)
    category_id = Column(
        String(36), ForeignKey("calendar_categories.id"), nullable=True
    )
    location_text = Column(String(255), nullable=True)
    building_id = Column(String(36), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_by_id = Column(String(36), nullable=False)
    approved_by_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    calendar = relationship("Calendar", back_populates="events")
    category = relationship("CalendarCategory")
    parent = relationship(
        "CalendarEvent", remote_side=[id], back_populates="children"
    )
    children = relationship(
        "CalendarEvent", back_populates="parent", cascade="all, delete-orphan"
    )
    approvals = relationship(
        "EventApproval",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventApproval.channel_type",
    )
    resource_requests = relationship(
        "EventResourceRequest", back_populates="event", cascade="all, delete-orphan"
    )

    @property
    def kind(self) -> EventKind:
        if self.parent_event_id is None:
            return EventKind.SERIES_ROOT if self.rrule else EventKind.STANDALONE
        return EventKind.SPLIT_CHILD if self.rrule else EventKind.EXCEPTION

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def exceptions(self) -> list["CalendarEvent"]:
        """Exception rows hanging off this series, cancelled ones included."""
        return [child for child in self.children if child.rrule is None]


class EventApproval(Base):
    __tablename__ = "event_approvals"
    __table_args__ = (
        UniqueConstraint(
            "event_id", "channel_type", name="uq_event_approvals_event_channel"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    channel_type = Column(String(32), nullable=False)
    approval_status = Column(
        "status", String(16), nullable=False, default=ApprovalStatus.PENDING.value
    )
    responded_by_id = Column(String(36), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("CalendarEvent", back_populates="approvals")


class ApprovalChannelConfig(Base):
    __tablename__ = "approval_channel_configs"

    id = Column(String(36), primary_key=True, default=_uuid)
    channel_type = Column(String(32), nullable=False, unique=True)
    mode = Column(String(16), nullable=False, default=ApprovalMode.REQUIRED.value)
    auto_approve_if_no_resource = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class EventResourceRequest(Base):
    __tablename__ = "event_resource_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False
    )
    resource_type = Column(String(32), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("CalendarEvent", back_populates="resource_requests")


class CalendarSubscription(Base):
    __tablename__ = "calendar_subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "calendar_id", name="uq_calendar_subscriptions_user_calendar"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    calendar_id = Column(String(36), ForeignKey("calendars.id"), nullable=False)
    is_visible = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    calendar = relationship("Calendar", back_populates="subscriptions")
