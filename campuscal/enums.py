from __future__ import annotations

from enum import Enum


class EventStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"
    SKIPPED = "skipped"


class ApprovalChannel(str, Enum):
    ADMIN = "admin"
    FACILITIES = "facilities"
    AV_PRODUCTION = "av_production"
    CUSTODIAL = "custodial"
    SECURITY = "security"
    ATHLETIC_DIRECTOR = "athletic_director"


class ApprovalMode(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"


class ResourceType(str, Enum):
    FACILITY = "facility"
    AV_EQUIPMENT = "av_equipment"
    CUSTODIAL = "custodial"
    SECURITY = "security"
    ATHLETICS = "athletics"


class EditMode(str, Enum):
    THIS = "this"
    THIS_AND_FOLLOWING = "this_and_following"
    ALL = "all"


class EventKind(str, Enum):
    STANDALONE = "standalone"
    SERIES_ROOT = "series_root"
    SPLIT_CHILD = "split_child"
    EXCEPTION = "exception"


class CalendarType(str, Enum):
    ACADEMIC = "academic"
    STAFF = "staff"
    TIMETABLE = "timetable"
    PARENT_FACING = "parent_facing"
    ATHLETICS = "athletics"
    GENERAL = "general"
