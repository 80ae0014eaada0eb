"""
bloom.services.enrollment_service — Enrollment & Completion Rate
=================================================================

Enrollment is keyed by (event, user).  A cancelled enrollment is
re-activated on re-enrollment rather than duplicated.  Capacity counts
active participants only; observers never take a seat.

The completion rate is a one-way latch: once an enrollment reaches the
event's threshold it is ``completed`` and later recomputes only update
the number.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session
from bloom.database.models import (
    ApprovalStatus,
    CheckIn,
    Enrollment,
    EnrollmentStatus,
    EnrollmentType,
    Event,
    EventStatus,
    FeeModel,
    RefundStatus,
    User,
)
from bloom.engine.calendar import required_reading_days
from bloom.engine.completion import completion_rate, should_latch_completed
from bloom.engine.events import Topic
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
    ValidationError,
)
from bloom.services.leader_service import (
    active_participants,
    apply_auto_assign,
    release_leader_days,
)
from bloom.services.outbox_service import publish

logger = logging.getLogger(__name__)


def recompute_enrollment(session: Session, enrollment: Enrollment, event: Event,
                         *, now: datetime | None = None) -> bool:
    """Refresh ``completion_rate``; returns True when the latch just flipped."""
    days_checked = session.scalar(
        select(func.count(func.distinct(CheckIn.schedule_id))).where(
            CheckIn.enrollment_id == enrollment.id
        )
    ) or 0
    enrollment.completion_rate = completion_rate(days_checked, required_reading_days(event))

    if not should_latch_completed(enrollment.status, enrollment.completion_rate,
                                  event.completion_threshold):
        return False

    now = now or datetime.now()
    enrollment.status = EnrollmentStatus.COMPLETED
    enrollment.completed_at = now
    publish(session, Topic.ENROLLMENT_COMPLETED, {
        "enrollment_id": enrollment.id,
        "event_id": event.id,
        "user_id": enrollment.user_id,
        "completion_rate": enrollment.completion_rate,
    }, now=now)
    logger.info("Enrollment %d (user %d) completed event %d at %.2f%%",
                enrollment.id, enrollment.user_id, event.id, enrollment.completion_rate)
    return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def enroll(
    engine: Engine,
    *,
    event_id: int,
    user_id: int,
    enrollment_type: str = EnrollmentType.PARTICIPANT,
    now: datetime | None = None,
    auto_assign_threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> ServiceResult[Enrollment]:
    """Register *user_id* for *event_id*.

    Preconditions: event approved and enrolling, user not already active,
    seats left for participants.  Random-mode events are re-assigned once
    the participant count reaches *auto_assign_threshold*.
    """
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            # Row lock serializes capacity checks on PostgreSQL.
            event = session.get(Event, event_id, with_for_update=True)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            if enrollment_type not in set(EnrollmentType):
                raise ValidationError(f"Unknown enrollment type: {enrollment_type}")
            if event.approval_status != ApprovalStatus.APPROVED:
                raise StateConflictError("Event is not approved")
            if event.status != EventStatus.ENROLLING:
                raise StateConflictError("Event is not open for enrollment")

            existing = session.scalar(
                select(Enrollment).where(
                    Enrollment.event_id == event_id, Enrollment.user_id == user_id
                )
            )
            if existing is not None and existing.is_active:
                raise StateConflictError("Already enrolled in this event")

            participants = active_participants(session, event_id)
            if (enrollment_type == EnrollmentType.PARTICIPANT
                    and len(participants) >= event.max_participants):
                raise StateConflictError("Event is full")

            fee = Decimal("0")
            if enrollment_type == EnrollmentType.PARTICIPANT and event.fee_model != FeeModel.FREE:
                fee = Decimal(event.fee_amount or 0)

            if existing is None:
                enrollment = Enrollment(event_id=event_id, user_id=user_id)
                session.add(enrollment)
            else:
                enrollment = existing
                enrollment.cancelled_at = None
                enrollment.refund_status = RefundStatus.NONE
                enrollment.fee_refunded = Decimal("0")
                enrollment.completion_rate = 0.0
            enrollment.enrollment_type = enrollment_type
            enrollment.status = EnrollmentStatus.ENROLLED
            enrollment.enrolled_at = now
            enrollment.fee_paid = fee
            session.flush()

            publish(session, Topic.ENROLLMENT_CREATED, {
                "enrollment_id": enrollment.id,
                "event_id": event_id,
                "user_id": user_id,
                "enrollment_type": str(enrollment_type),
                "fee_paid": str(fee),
            }, now=now)

            if enrollment_type == EnrollmentType.PARTICIPANT:
                apply_auto_assign(session, event, threshold=auto_assign_threshold)

        logger.info("User %d enrolled in event %d as %s", user_id, event_id, enrollment_type)
        return ServiceResult.success(enrollment)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def cancel(
    engine: Engine,
    *,
    enrollment_id: int,
    user_id: int | None = None,
    now: datetime | None = None,
    auto_assign_threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> ServiceResult[Enrollment]:
    """Withdraw before the event starts; a paid fee is flagged for refund.

    *user_id*, when given, must own the enrollment.  Reading days the
    participant was leading are released (and re-dealt for random mode).
    """
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            enrollment = session.get(Enrollment, enrollment_id)
            if enrollment is None:
                raise NotFoundError(f"Enrollment {enrollment_id} not found")
            if user_id is not None and enrollment.user_id != user_id:
                raise AuthorizationError("You can only cancel your own enrollment")
            if enrollment.status != EnrollmentStatus.ENROLLED:
                raise StateConflictError(f"Enrollment is {enrollment.status}")
            event = session.get(Event, enrollment.event_id)
            if event.status != EventStatus.ENROLLING:
                raise StateConflictError("Enrollment can only be cancelled before the event starts")

            enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.cancelled_at = now
            if Decimal(enrollment.fee_paid or 0) > 0:
                # Amount is computed by the payment collaborator.
                enrollment.refund_status = RefundStatus.PENDING
            release_leader_days(session, event, enrollment.user_id,
                                threshold=auto_assign_threshold)

            publish(session, Topic.ENROLLMENT_CANCELLED, {
                "enrollment_id": enrollment.id,
                "event_id": event.id,
                "user_id": enrollment.user_id,
                "fee_model": str(event.fee_model),
                "fee_paid": str(enrollment.fee_paid or 0),
                "refund_pending": enrollment.refund_status == RefundStatus.PENDING,
            }, now=now)

        logger.info("Enrollment %d cancelled (event %d)", enrollment_id, enrollment.event_id)
        return ServiceResult.success(enrollment)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def recompute_completion_rate(
    engine: Engine,
    enrollment_id: int,
    *,
    now: datetime | None = None,
) -> ServiceResult[Enrollment]:
    with get_session(engine) as session:
        enrollment = session.get(Enrollment, enrollment_id)
        if enrollment is None:
            return ServiceResult.failure(NotFoundError(f"Enrollment {enrollment_id} not found"))
        event = session.get(Event, enrollment.event_id)
        recompute_enrollment(session, enrollment, event, now=now)
        session.flush()
    return ServiceResult.success(enrollment)


def event_enrollments(engine: Engine, event_id: int, *, active_only: bool = True) -> list[Enrollment]:
    with get_session(engine) as session:
        stmt = select(Enrollment).where(Enrollment.event_id == event_id)
        if active_only:
            stmt = stmt.where(Enrollment.status != EnrollmentStatus.CANCELLED)
        return list(session.scalars(stmt.order_by(Enrollment.enrolled_at, Enrollment.id)).all())
