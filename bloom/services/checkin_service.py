"""
bloom.services.checkin_service — Daily Check-ins
=================================================

A check-in is a participant's reading note for one reading day.  It is
the target flowers are given to and the input of the completion rate.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError

from bloom.database.engine import get_session
from bloom.database.models import (
    CheckIn,
    Enrollment,
    EnrollmentType,
    Event,
    EventStatus,
    ReadingSchedule,
)
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
    ValidationError,
)
from bloom.services.enrollment_service import recompute_enrollment

logger = logging.getLogger(__name__)


def check_in(
    engine: Engine,
    *,
    event_id: int,
    user_id: int,
    schedule_id: int,
    content: str,
    now: datetime | None = None,
) -> ServiceResult[CheckIn]:
    """Record *user_id*'s note for reading day *schedule_id*.

    One check-in per (user, reading day); future days are rejected.
    """
    now = now or datetime.now()
    if not content or not content.strip():
        return ServiceResult.failure(ValidationError("Check-in content is required"))

    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.status != EventStatus.IN_PROGRESS:
                raise StateConflictError("Check-ins are only accepted while the event is running")

            schedule = session.get(ReadingSchedule, schedule_id)
            if schedule is None or schedule.event_id != event_id:
                raise ValidationError("Reading day does not belong to this event")
            if schedule.reading_date > now.date():
                raise StateConflictError("Cannot check in for a future reading day")

            enrollment = session.scalar(
                select(Enrollment).where(
                    Enrollment.event_id == event_id, Enrollment.user_id == user_id
                )
            )
            if (enrollment is None or not enrollment.is_active
                    or enrollment.enrollment_type != EnrollmentType.PARTICIPANT):
                raise AuthorizationError("Only enrolled participants can check in")

            try:
                with session.begin_nested():   # SAVEPOINT
                    record = CheckIn(
                        event_id=event_id,
                        schedule_id=schedule_id,
                        enrollment_id=enrollment.id,
                        user_id=user_id,
                        content=content.strip(),
                        created_at=now,
                    )
                    session.add(record)
                    session.flush()
            except IntegrityError:
                raise StateConflictError("Already checked in for this reading day") from None

            session.execute(
                update(Enrollment)
                .where(Enrollment.id == enrollment.id)
                .values(check_in_count=Enrollment.check_in_count + 1)
                .execution_options(synchronize_session=False)
            )
            session.refresh(enrollment)
            recompute_enrollment(session, enrollment, event, now=now)

        logger.info("User %d checked in day %d of event %d", user_id, schedule.day_number, event_id)
        return ServiceResult.success(record)
    except BloomError as exc:
        return ServiceResult.failure(exc)
