"""Multi-channel approval state machine for calendar events."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .enums import (
    ApprovalChannel,
    ApprovalMode,
    ApprovalStatus,
    EventKind,
    EventStatus,
    ResourceType,
)
from .errors import (
    AuthorizationDeniedError,
    ConsistencyError,
    InvalidStateError,
)
from .models import ApprovalChannelConfig, CalendarEvent, EventApproval
from .utils import utcnow

# Use uvicorn's error logger so approval messages get the level prefix.
logger = logging.getLogger("uvicorn.error")

# Recorded as the approver when auto-approved channels confirm an event.
AUTO_APPROVER = "system"

CLEARED_STATUSES = frozenset(
    {
        ApprovalStatus.APPROVED.value,
        ApprovalStatus.AUTO_APPROVED.value,
        ApprovalStatus.SKIPPED.value,
    }
)

# Admin is always applicable; every other channel needs a matching resource.
CHANNEL_RESOURCE_TYPES: dict[str, frozenset[str]] = {
    ApprovalChannel.FACILITIES.value: frozenset({ResourceType.FACILITY.value}),
    ApprovalChannel.AV_PRODUCTION.value: frozenset({ResourceType.AV_EQUIPMENT.value}),
    ApprovalChannel.CUSTODIAL.value: frozenset({ResourceType.CUSTODIAL.value}),
    ApprovalChannel.SECURITY.value: frozenset({ResourceType.SECURITY.value}),
    ApprovalChannel.ATHLETIC_DIRECTOR.value: frozenset({ResourceType.ATHLETICS.value}),
}


def initial_status(*, can_publish: bool, requires_approval: bool) -> EventStatus:
    """Status for a newly created event."""
    if can_publish or not requires_approval:
        return EventStatus.CONFIRMED
    return EventStatus.DRAFT


def channel_applies(channel_type: str, resource_types: Iterable[str]) -> bool:
    if channel_type == ApprovalChannel.ADMIN.value:
        return True
    wanted = CHANNEL_RESOURCE_TYPES.get(channel_type, frozenset())
    return not wanted.isdisjoint(resource_types)


def plan_approvals(
    configs: Sequence[ApprovalChannelConfig], resource_types: Iterable[str]
) -> list[tuple[str, str]]:
    """Return ``(channel_type, status)`` pairs to create on submission.

    Only required channels are considered. Falls back to a single pending
    admin channel so a submitted event is always gated by something.
    """
    requested = set(resource_types)
    plan: list[tuple[str, str]] = []
    for config in configs:
        if config.mode != ApprovalMode.REQUIRED.value:
            continue
        if channel_applies(config.channel_type, requested):
            plan.append((config.channel_type, ApprovalStatus.PENDING.value))
        elif config.auto_approve_if_no_resource:
            plan.append((config.channel_type, ApprovalStatus.AUTO_APPROVED.value))
    if not plan:
        plan.append((ApprovalChannel.ADMIN.value, ApprovalStatus.PENDING.value))
    return plan


def composite_status(statuses: Iterable[str]) -> EventStatus:
    """Overall event status implied by its channel statuses."""
    collected = list(statuses)
    if any(status == ApprovalStatus.REJECTED.value for status in collected):
        return EventStatus.REJECTED
    if collected and all(status in CLEARED_STATUSES for status in collected):
        return EventStatus.CONFIRMED
    return EventStatus.PENDING_APPROVAL


def submit_for_approval(
    session: Session, event: CalendarEvent, *, is_creator: bool
) -> list[EventApproval]:
    """Move a draft to ``pending_approval`` and create its approval records.

    The records and the status flip are written in the caller's transaction.
    """
    if not is_creator:
        raise AuthorizationDeniedError("Only the creator can submit an event for approval")
    if event.kind == EventKind.EXCEPTION:
        raise InvalidStateError("Submit the series, not a single occurrence")
    if event.status != EventStatus.DRAFT.value:
        raise InvalidStateError(
            f"Only draft events can be submitted for approval (status is {event.status})"
        )
    if event.approvals:
        raise ConsistencyError(
            f"Event {event.id} is a draft but already has approval records; "
            "an earlier submission did not complete"
        )

    configs = session.scalars(
        select(ApprovalChannelConfig)
        .where(ApprovalChannelConfig.mode == ApprovalMode.REQUIRED.value)
        .order_by(ApprovalChannelConfig.channel_type)
    ).all()
    resource_types = {request.resource_type for request in event.resource_requests}
    records = [
        EventApproval(event=event, channel_type=channel, approval_status=status)
        for channel, status in plan_approvals(configs, resource_types)
    ]
    session.add_all(records)
    _set_status(event, EventStatus.PENDING_APPROVAL.value)
    event.last_modified = utcnow()
    # Auto-approved channels may already clear the whole event.
    _apply_composite(event, decided_by=AUTO_APPROVER)
    session.add(event)
    session.flush()
    logger.info(
        "Event %s submitted for approval on channels %s",
        event.id,
        ", ".join(f"{record.channel_type}={record.approval_status}" for record in records),
    )
    return records


def copy_approvals(source: CalendarEvent, target: CalendarEvent) -> list[EventApproval]:
    """Give ``target`` the approval state ``source`` has reached so far.

    Used when a series is split: the following occurrences keep every
    decision already made and wait on the same open channels.
    """
    _set_status(target, source.status)
    target.approved_by_id = source.approved_by_id
    return [
        EventApproval(
            event=target,
            channel_type=approval.channel_type,
            approval_status=approval.approval_status,
            responded_by_id=approval.responded_by_id,
            responded_at=approval.responded_at,
            reason=approval.reason,
        )
        for approval in source.approvals
    ]


def _find_approval(event: CalendarEvent, channel_type: str) -> EventApproval:
    for approval in event.approvals:
        if approval.channel_type == channel_type:
            return approval
    raise InvalidStateError(
        f"Event {event.id} has no {channel_type} approval to decide"
    )


def _require_open(event: CalendarEvent, approval: EventApproval) -> None:
    if event.status != EventStatus.PENDING_APPROVAL.value:
        raise InvalidStateError(
            f"Event {event.id} is not awaiting approval (status is {event.status})"
        )
    if approval.approval_status != ApprovalStatus.PENDING.value:
        raise InvalidStateError(
            f"The {approval.channel_type} channel is already {approval.approval_status}"
        )


def _record_decision(
    approval: EventApproval,
    status: ApprovalStatus,
    *,
    responder_id: str,
    reason: str | None = None,
) -> None:
    approval.approval_status = status.value
    approval.responded_by_id = responder_id
    approval.responded_at = utcnow()
    if reason is not None:
        approval.reason = reason


def _set_status(event: CalendarEvent, status: str) -> None:
    """Exceptions share their series' approval state."""
    event.status = status
    for exception in event.exceptions:
        exception.status = status


def _apply_composite(event: CalendarEvent, *, decided_by: str) -> None:
    status = composite_status(approval.approval_status for approval in event.approvals)
    if status.value == event.status:
        return
    _set_status(event, status.value)
    if status == EventStatus.CONFIRMED:
        event.approved_by_id = decided_by
    event.last_modified = utcnow()
    logger.info("Event %s is now %s", event.id, status.value)


def approve_channel(
    session: Session, event: CalendarEvent, channel_type: str, *, approver_id: str
) -> EventApproval:
    """Approve one channel; confirms the event once every channel has cleared."""
    approval = _find_approval(event, channel_type)
    if approval.approval_status == ApprovalStatus.APPROVED.value:
        return approval
    _require_open(event, approval)
    _record_decision(approval, ApprovalStatus.APPROVED, responder_id=approver_id)
    _apply_composite(event, decided_by=approver_id)
    session.flush()
    return approval


def reject_channel(
    session: Session,
    event: CalendarEvent,
    channel_type: str,
    *,
    approver_id: str,
    reason: str | None,
) -> EventApproval:
    """Reject one channel; the event is rejected without waiting for the rest."""
    approval = _find_approval(event, channel_type)
    if approval.approval_status == ApprovalStatus.REJECTED.value:
        return approval
    _require_open(event, approval)
    _record_decision(
        approval, ApprovalStatus.REJECTED, responder_id=approver_id, reason=reason
    )
    _apply_composite(event, decided_by=approver_id)
    session.flush()
    return approval


def skip_channel(
    session: Session, event: CalendarEvent, channel_type: str, *, actor_id: str
) -> EventApproval:
    """Waive a pending channel. A skipped channel counts as cleared."""
    approval = _find_approval(event, channel_type)
    _require_open(event, approval)
    _record_decision(approval, ApprovalStatus.SKIPPED, responder_id=actor_id)
    _apply_composite(event, decided_by=actor_id)
    session.flush()
    return approval


def find_incomplete_submissions(session: Session) -> list[tuple[CalendarEvent, str]]:
    """Events whose approval rows disagree with their status.

    Exception rows are skipped; their approval state is the series'.
    """
    problems: list[tuple[CalendarEvent, str]] = []
    gated = or_(CalendarEvent.parent_event_id.is_(None), CalendarEvent.rrule.is_not(None))
    drafts_with_rows = session.scalars(
        select(CalendarEvent)
        .where(gated)
        .where(CalendarEvent.status == EventStatus.DRAFT.value)
        .where(CalendarEvent.approvals.any())
    ).all()
    for event in drafts_with_rows:
        problems.append((event, "draft event has approval records"))
    pending_without_rows = session.scalars(
        select(CalendarEvent)
        .where(gated)
        .where(CalendarEvent.status == EventStatus.PENDING_APPROVAL.value)
        .where(~CalendarEvent.approvals.any())
    ).all()
    for event in pending_without_rows:
        problems.append((event, "pending event has no approval records"))
    return problems


def repair_incomplete_submissions(session: Session) -> int:
    """Return half-submitted events to a clean draft so they can be resubmitted."""
    repaired = 0
    for event, problem in find_incomplete_submissions(session):
        event.approvals.clear()
        _set_status(event, EventStatus.DRAFT.value)
        event.last_modified = utcnow()
        logger.warning("Repaired event %s: %s", event.id, problem)
        repaired += 1
    session.flush()
    return repaired
