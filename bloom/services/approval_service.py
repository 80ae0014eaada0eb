"""
bloom.services.approval_service — Admin Approval Workflow
==========================================================

The approval axis runs independently of the status axis::

    (unsubmitted) ──submit──▶ pending ──approve──▶ approved
                                 │
                                 └──reject──▶ rejected ──submit──▶ pending

Every transition appends an :class:`~bloom.database.models.ApprovalLog`
row and an outbox event in the same transaction.  Submission validates
the whole event at once and mutates nothing when any rule fails.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session
from bloom.database.models import (
    ApprovalAction,
    ApprovalLog,
    ApprovalStatus,
    Event,
    EventStatus,
    ReadingSchedule,
    User,
)
from bloom.engine.events import Topic
from bloom.engine.validation import validate_submission
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
    ValidationError,
)
from bloom.services.leader_service import apply_auto_assign
from bloom.services.outbox_service import publish

logger = logging.getLogger(__name__)


def _load_event(session: Session, event_id: int) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def require_admin(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None or not user.is_admin:
        raise AuthorizationError("Admin permission required")
    return user


def _log(session: Session, event: Event, actor_id: int, action: ApprovalAction,
         now: datetime, reason: str | None = None) -> None:
    session.add(ApprovalLog(
        event_id=event.id, actor_id=actor_id, action=action, reason=reason, created_at=now,
    ))


def queue_position(session: Session, event: Event) -> int:
    """1-based position of a pending event in the approval queue."""
    ahead = session.scalar(
        select(func.count(Event.id)).where(
            Event.approval_status == ApprovalStatus.PENDING,
            Event.id != event.id,
            (Event.submitted_at < event.submitted_at)
            | ((Event.submitted_at == event.submitted_at) & (Event.id < event.id)),
        )
    )
    return (ahead or 0) + 1


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def submit(
    engine: Engine,
    *,
    event_id: int,
    leader_id: int,
    now: datetime | None = None,
) -> ServiceResult[int]:
    """Send a draft to the admin queue; returns its queue position."""
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            event = _load_event(session, event_id)
            if event.leader_id != leader_id:
                raise AuthorizationError("Only the event leader can submit this event")
            if event.status != EventStatus.DRAFT:
                raise StateConflictError("Only draft events can be submitted")
            if event.approval_status == ApprovalStatus.PENDING:
                raise StateConflictError("Event is already awaiting approval")
            if event.approval_status == ApprovalStatus.APPROVED:
                raise StateConflictError("Event is already approved")

            schedule_count = session.scalar(
                select(func.count(ReadingSchedule.id)).where(ReadingSchedule.event_id == event_id)
            )
            errors = validate_submission(event, schedule_count or 0, now.date())
            if errors:
                raise ValidationError(errors)

            resubmission = event.approval_status == ApprovalStatus.REJECTED
            event.approval_status = ApprovalStatus.PENDING
            event.submitted_at = now
            event.rejected_at = None
            event.rejection_reason = None
            _log(session, event, leader_id,
                 ApprovalAction.RESUBMITTED if resubmission else ApprovalAction.SUBMITTED, now)
            session.flush()

            position = queue_position(session, event)
            publish(session, Topic.EVENT_SUBMITTED, {
                "event_id": event.id,
                "leader_id": leader_id,
                "resubmission": resubmission,
                "queue_position": position,
            }, now=now)

        logger.info("Event %d submitted for approval (queue position %d)", event_id, position)
        return ServiceResult.success(position)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def approve(
    engine: Engine,
    *,
    event_id: int,
    admin_id: int,
    now: datetime | None = None,
    auto_open_enrollment: bool = True,
    auto_assign_threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> ServiceResult[Event]:
    """Approve a pending event and, by default, open it for enrollment."""
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            require_admin(session, admin_id)
            event = _load_event(session, event_id)
            if event.approval_status != ApprovalStatus.PENDING:
                raise StateConflictError(f"Event is not pending approval ({event.approval_status})")

            event.approval_status = ApprovalStatus.APPROVED
            event.approved_by_id = admin_id
            event.approved_at = now
            _log(session, event, admin_id, ApprovalAction.APPROVED, now)

            if auto_open_enrollment and event.status == EventStatus.DRAFT:
                event.status = EventStatus.ENROLLING

            apply_auto_assign(session, event, threshold=auto_assign_threshold)
            publish(session, Topic.EVENT_APPROVED, {
                "event_id": event.id,
                "leader_id": event.leader_id,
                "approved_by": admin_id,
                "approved_at": now.isoformat(),
            }, now=now)

        logger.info("Event %d approved by admin %d (status %s)", event_id, admin_id, event.status)
        return ServiceResult.success(event)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def reject(
    engine: Engine,
    *,
    event_id: int,
    admin_id: int,
    reason: str,
    now: datetime | None = None,
) -> ServiceResult[Event]:
    """Reject a pending event; the leader may edit and resubmit."""
    now = now or datetime.now()
    if not reason or not reason.strip():
        return ServiceResult.failure(ValidationError("A rejection reason is required"))
    try:
        with get_session(engine) as session:
            require_admin(session, admin_id)
            event = _load_event(session, event_id)
            if event.approval_status != ApprovalStatus.PENDING:
                raise StateConflictError(f"Event is not pending approval ({event.approval_status})")

            event.approval_status = ApprovalStatus.REJECTED
            event.rejected_at = now
            event.rejection_reason = reason.strip()
            _log(session, event, admin_id, ApprovalAction.REJECTED, now, reason=event.rejection_reason)
            publish(session, Topic.EVENT_REJECTED, {
                "event_id": event.id,
                "leader_id": event.leader_id,
                "rejected_by": admin_id,
                "reason": event.rejection_reason,
            }, now=now)

        logger.info("Event %d rejected by admin %d: %s", event_id, admin_id, reason)
        return ServiceResult.success(event)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def approval_queue(engine: Engine) -> list[Event]:
    """Pending events, oldest submission first."""
    with get_session(engine) as session:
        return list(session.scalars(
            select(Event)
            .where(Event.approval_status == ApprovalStatus.PENDING)
            .order_by(Event.submitted_at, Event.id)
        ).all())


def approval_history(engine: Engine, event_id: int) -> list[ApprovalLog]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(ApprovalLog)
            .where(ApprovalLog.event_id == event_id)
            .order_by(ApprovalLog.id)
        ).all())
