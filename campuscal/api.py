"""FastAPI application for campuscal."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import crud, service
from .config import settings
from .database import SessionLocal
from .enums import EditMode
from .errors import (
    AuthorizationDeniedError,
    CalendarError,
    ConsistencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .ics import generate_ics
from .models import (
    ApprovalChannelConfig,
    Calendar,
    CalendarCategory,
    CalendarEvent,
    CalendarSubscription,
    EventApproval,
)
from .recurrence import VirtualInstance
from .storage import init_db

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

ACTOR_HEADER = "X-Actor-Id"
PUBLISH_HEADER = "X-Actor-Can-Publish"
ICS_DEFAULT_DAYS = settings.ics_default_days
EVENTS_PER_PAGE = settings.events_per_page

ERROR_STATUS_CODES: dict[type[CalendarError], int] = {
    NotFoundError: 404,
    InvalidStateError: 409,
    ConsistencyError: 409,
    AuthorizationDeniedError: 403,
    ValidationError: 400,
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("campuscal")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="campuscal", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _status_for(exc: CalendarError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 400


@app.exception_handler(CalendarError)
async def calendar_error_handler(request: Request, exc: CalendarError):
    status = _status_for(exc)
    if isinstance(exc, ConsistencyError):
        logger.error(
            "Consistency problem on %s %s: %s", request.method, request.url.path, exc
        )
    return JSONResponse({"error": exc.kind, "detail": str(exc)}, status_code=status)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"error": "DatabaseError", "detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "RequestValidation", "detail": exc.errors()}, status_code=422
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse(
        {"error": "InternalError", "detail": "Internal server error"}, status_code=500
    )


def _actor_id(request: Request) -> str:
    actor = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not actor:
        raise HTTPException(status_code=401, detail=f"{ACTOR_HEADER} header required")
    return actor


def _optional_actor_id(request: Request) -> str | None:
    return (request.headers.get(ACTOR_HEADER) or "").strip() or None


def _can_publish(request: Request) -> bool:
    raw = (request.headers.get(PUBLISH_HEADER) or "").strip().lower()
    return raw in {"1", "true", "yes"}


def _parse_iso_datetime_param(name: str, raw: str | None) -> datetime | None:
    """Parse an ISO8601 datetime query parameter or raise a 400."""
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid {name}; use ISO8601 format"
        ) from exc


def _edit_mode(raw: str | None) -> EditMode:
    try:
        return EditMode((raw or EditMode.ALL.value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(mode.value for mode in EditMode)
        raise HTTPException(
            status_code=400, detail=f"Invalid mode; expected one of {allowed}"
        ) from exc


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_calendar(calendar: Calendar):
    return {
        "id": calendar.id,
        "name": calendar.name,
        "slug": calendar.slug,
        "calendar_type": calendar.calendar_type,
        "color": calendar.color,
        "requires_approval": calendar.requires_approval,
        "is_active": calendar.is_active,
        "is_default": calendar.is_default,
        "created_at": calendar.created_at.isoformat(),
    }


def _serialize_category(category: CalendarCategory):
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "icon": category.icon,
        "calendar_type": category.calendar_type,
        "calendar_id": category.calendar_id,
        "is_system": category.is_system,
        "sort_order": category.sort_order,
    }


def _serialize_approval(approval: EventApproval):
    return {
        "channel_type": approval.channel_type,
        "status": approval.approval_status,
        "responded_by_id": approval.responded_by_id,
        "responded_at": _iso(approval.responded_at),
        "reason": approval.reason,
    }


def _serialize_event(event: CalendarEvent):
    return {
        "id": event.id,
        "calendar_id": event.calendar_id,
        "parent_event_id": event.parent_event_id,
        "kind": event.kind.value,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time.replace(tzinfo=UTC).isoformat(),
        "end_time": event.end_time.replace(tzinfo=UTC).isoformat(),
        "timezone": event.timezone,
        "is_all_day": event.is_all_day,
        "rrule": event.rrule,
        "recurrence_description": service.describe_event(event),
        "status": event.status,
        "original_start": (
            event.original_start.replace(tzinfo=UTC).isoformat()
            if event.original_start
            else None
        ),
        "is_cancelled": event.is_cancelled,
        "category_id": event.category_id,
        "location_text": event.location_text,
        "building_id": event.building_id,
        "metadata": dict(event.event_metadata or {}),
        "created_by_id": event.created_by_id,
        "approved_by_id": event.approved_by_id,
        "approvals": [_serialize_approval(approval) for approval in event.approvals],
        "resource_requests": [
            {
                "resource_type": request.resource_type,
                "quantity": request.quantity,
                "notes": request.notes,
            }
            for request in event.resource_requests
        ],
        "last_modified": event.last_modified.isoformat(),
    }


def _serialize_instance(instance: VirtualInstance):
    payload = asdict(instance)
    for key in ("start_time", "end_time", "original_start"):
        payload[key] = _iso(payload[key])
    return payload


def _serialize_subscription(subscription: CalendarSubscription):
    return {
        "calendar_id": subscription.calendar_id,
        "user_id": subscription.user_id,
        "is_visible": subscription.is_visible,
    }


def _serialize_channel_config(config: ApprovalChannelConfig):
    return {
        "channel_type": config.channel_type,
        "mode": config.mode,
        "auto_approve_if_no_resource": config.auto_approve_if_no_resource,
    }


class CalendarCreatePayload(BaseModel):
    name: str
    calendar_type: str = "general"
    color: str | None = None
    requires_approval: bool = False
    is_default: bool = False


class CalendarUpdatePayload(BaseModel):
    name: str | None = None
    calendar_type: str | None = None
    color: str | None = None
    requires_approval: bool | None = None
    is_active: bool | None = None
    is_default: bool | None = None


class ResourceRequestPayload(BaseModel):
    resource_type: str
    quantity: int = Field(1, ge=1)
    notes: str | None = None


class EventCreatePayload(BaseModel):
    calendar_id: str
    title: str
    description: str | None = None
    start_time: datetime = Field(..., description="ISO datetime; naive values use timezone")
    end_time: datetime
    timezone: str | None = Field(None, description="IANA zone name")
    is_all_day: bool = False
    rrule: str | None = Field(None, description="RFC 5545 RRULE, without DTSTART")
    category_id: str | None = None
    location_text: str | None = None
    building_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    resource_requests: list[ResourceRequestPayload] = Field(default_factory=list)


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    timezone: str | None = None
    is_all_day: bool | None = None
    rrule: str | None = None
    category_id: str | None = None
    location_text: str | None = None
    building_id: str | None = None
    metadata: dict[str, Any] | None = None


class DecisionPayload(BaseModel):
    channel_type: str
    reason: str | None = None


class CategoryCreatePayload(BaseModel):
    name: str
    color: str | None = None
    icon: str | None = None
    calendar_type: str | None = None
    calendar_id: str | None = None
    sort_order: int = 0


class SubscriptionPayload(BaseModel):
    is_visible: bool


class ChannelConfigPayload(BaseModel):
    mode: str = "required"
    auto_approve_if_no_resource: bool = False


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# -------- JSON API (v1) --------


@app.get("/api/v1/calendars")
def api_list_calendars(
    calendar_type: str | None = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
):
    calendars = crud.get_calendars(
        db,
        is_active=None if include_inactive else True,
        calendar_type=calendar_type,
    )
    return {"calendars": [_serialize_calendar(calendar) for calendar in calendars]}


@app.post("/api/v1/calendars", status_code=201)
def api_create_calendar(
    payload: CalendarCreatePayload, request: Request, db: Session = Depends(get_db)
):
    _actor_id(request)
    calendar = crud.create_calendar(db, **payload.model_dump())
    return {"calendar": _serialize_calendar(calendar)}


@app.get("/api/v1/calendars/{calendar_id}")
def api_get_calendar(calendar_id: str, db: Session = Depends(get_db)):
    return {"calendar": _serialize_calendar(crud.get_calendar(db, calendar_id))}


@app.patch("/api/v1/calendars/{calendar_id}")
def api_update_calendar(
    calendar_id: str,
    payload: CalendarUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    _actor_id(request)
    calendar = crud.get_calendar(db, calendar_id)
    calendar = crud.update_calendar(db, calendar, **payload.model_dump(exclude_unset=True))
    return {"calendar": _serialize_calendar(calendar)}


@app.delete("/api/v1/calendars/{calendar_id}", status_code=204)
def api_delete_calendar(calendar_id: str, request: Request, db: Session = Depends(get_db)):
    _actor_id(request)
    crud.delete_calendar(db, crud.get_calendar(db, calendar_id))
    return Response(status_code=204)


@app.get("/api/v1/calendars/{calendar_id}/events.ics")
def api_calendar_ics(
    calendar_id: str,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Serve a calendar window as a downloadable ICS file."""

    calendar = crud.get_calendar(db, calendar_id)
    start_dt = _parse_iso_datetime_param("start", start) or datetime.now(UTC)
    end_dt = _parse_iso_datetime_param("end", end) or start_dt + timedelta(
        days=ICS_DEFAULT_DAYS
    )
    instances = service.get_events_in_range(
        db, start=start_dt, end=end_dt, calendar_ids=[calendar.id]
    )
    ics_text = generate_ics(instances, calendar_name=calendar.name)
    filename = f"{calendar.slug}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)


@app.get("/api/v1/events")
def api_list_events(
    request: Request,
    start: str = Query(..., description="ISO datetime"),
    end: str = Query(..., description="ISO datetime"),
    calendar_ids: list[str] | None = Query(None),
    category_id: str | None = Query(None),
    status: list[str] | None = Query(None),
    created_by_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(EVENTS_PER_PAGE, ge=1, le=500),
    db: Session = Depends(get_db),
):
    start_dt = _parse_iso_datetime_param("start", start)
    end_dt = _parse_iso_datetime_param("end", end)
    actor = _optional_actor_id(request)
    if not calendar_ids and actor:
        calendar_ids = crud.visible_calendar_ids(db, actor)
        if not calendar_ids:
            return {"events": [], "count": 0, "page": page, "per_page": per_page}
    instances = service.get_events_in_range(
        db,
        start=start_dt,
        end=end_dt,
        calendar_ids=calendar_ids,
        category_id=category_id,
        statuses=status,
        created_by_id=created_by_id,
    )
    offset = (page - 1) * per_page
    return {
        "events": [
            _serialize_instance(instance)
            for instance in instances[offset : offset + per_page]
        ],
        "count": len(instances),
        "page": page,
        "per_page": per_page,
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload, request: Request, db: Session = Depends(get_db)
):
    actor = _actor_id(request)
    data = payload.model_dump()
    resource_requests = data.pop("resource_requests")
    event = service.create_event(
        db,
        created_by_id=actor,
        can_publish=_can_publish(request),
        resource_requests=resource_requests,
        **data,
    )
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    instance = service.get_event_by_id(db, event_id)
    return {"event": _serialize_instance(instance)}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    request: Request,
    mode: str | None = Query(None),
    occurrence_start: str | None = Query(None),
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    event = service.update_event(
        db,
        event_id,
        payload.model_dump(exclude_unset=True),
        actor_id=actor,
        mode=_edit_mode(mode),
        occurrence_start=_parse_iso_datetime_param("occurrence_start", occurrence_start),
    )
    return {"event": _serialize_event(event)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    request: Request,
    mode: str | None = Query(None),
    occurrence_start: str | None = Query(None),
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    service.delete_event(
        db,
        event_id,
        actor_id=actor,
        mode=_edit_mode(mode),
        occurrence_start=_parse_iso_datetime_param("occurrence_start", occurrence_start),
    )
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/submit")
def api_submit_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    actor = _actor_id(request)
    event, _ = service.resolve_event_id(db, event_id)
    service.submit_for_approval(db, event.id, is_creator=event.created_by_id == actor)
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/approve")
def api_approve_event(
    event_id: str,
    payload: DecisionPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    event = service.approve_event(db, event_id, payload.channel_type, approver_id=actor)
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/reject")
def api_reject_event(
    event_id: str,
    payload: DecisionPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    event = service.reject_event(
        db, event_id, payload.channel_type, approver_id=actor, reason=payload.reason
    )
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/skip")
def api_skip_approval(
    event_id: str,
    payload: DecisionPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    event = service.skip_approval(db, event_id, payload.channel_type, actor_id=actor)
    return {"event": _serialize_event(event)}


@app.post("/api/v1/events/{event_id}/resources", status_code=201)
def api_add_resource_request(
    event_id: str,
    payload: ResourceRequestPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    _actor_id(request)
    event = service.get_event(db, event_id)
    service.add_resource_request(db, event, **payload.model_dump())
    return {"event": _serialize_event(event)}


@app.get("/api/v1/categories")
def api_list_categories(
    calendar_type: str | None = Query(None), db: Session = Depends(get_db)
):
    categories = service.get_categories(db, calendar_type=calendar_type)
    return {"categories": [_serialize_category(category) for category in categories]}


@app.post("/api/v1/categories", status_code=201)
def api_create_category(
    payload: CategoryCreatePayload, request: Request, db: Session = Depends(get_db)
):
    _actor_id(request)
    category = service.create_category(db, **payload.model_dump())
    return {"category": _serialize_category(category)}


@app.delete("/api/v1/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: str, request: Request, db: Session = Depends(get_db)
):
    _actor_id(request)
    service.delete_category(db, crud.get_category(db, category_id))
    return Response(status_code=204)


@app.get("/api/v1/subscriptions")
def api_list_subscriptions(request: Request, db: Session = Depends(get_db)):
    actor = _actor_id(request)
    subscriptions = service.get_user_subscriptions(db, actor)
    return {"subscriptions": [_serialize_subscription(s) for s in subscriptions]}


@app.put("/api/v1/subscriptions/{calendar_id}")
def api_toggle_subscription(
    calendar_id: str,
    payload: SubscriptionPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    actor = _actor_id(request)
    subscription = service.toggle_subscription(
        db, user_id=actor, calendar_id=calendar_id, is_visible=payload.is_visible
    )
    return {"subscription": _serialize_subscription(subscription)}


@app.get("/api/v1/approval-channels")
def api_list_channel_configs(db: Session = Depends(get_db)):
    configs = crud.get_channel_configs(db)
    return {"channels": [_serialize_channel_config(config) for config in configs]}


@app.put("/api/v1/approval-channels/{channel_type}")
def api_upsert_channel_config(
    channel_type: str,
    payload: ChannelConfigPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    _actor_id(request)
    if not _can_publish(request):
        raise HTTPException(status_code=403, detail="Publishing authority required")
    config = crud.upsert_channel_config(
        db,
        channel_type=channel_type,
        mode=payload.mode,
        auto_approve_if_no_resource=payload.auto_approve_if_no_resource,
    )
    return {"channel": _serialize_channel_config(config)}
