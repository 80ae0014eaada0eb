"""
bloom.services.leader_service — Daily Leaders
==============================================

Two mutually exclusive modes per event:

* **voluntary** — enrolled participants claim open reading days, at most
  ``max_claims`` each.  The claim is a conditional UPDATE on
  ``assigned_leader_id IS NULL`` so two people can't win the same day.
* **random** — once enough participants are enrolled every reading day is
  assigned round-robin in enrollment order.  Re-running reassigns all
  days, which is why it never touches voluntary events.

Either way a participant who cancels gives up their days.  The event
leader can hand an uncovered day to a backup, and any current leader can
reassign a day outright.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session
from bloom.database.models import (
    CheckIn,
    Enrollment,
    EnrollmentStatus,
    EnrollmentType,
    Event,
    EventStatus,
    LeaderAssignment,
    ReadingSchedule,
    Reward,
)
from bloom.engine.assignment import round_robin
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_ACTIVE = (EnrollmentStatus.ENROLLED, EnrollmentStatus.COMPLETED)


@dataclass
class LeaderWorkload:
    user_id: int
    assigned_days: int = 0
    flowers_given: int = 0


@dataclass
class AssignmentStats:
    total_days: int
    assigned_days: int
    unique_leaders: int
    assignment_rate: float
    backup_needed: int
    workload: list[LeaderWorkload] = field(default_factory=list)

    @property
    def unassigned_days(self) -> int:
        return self.total_days - self.assigned_days


def active_participants(session: Session, event_id: int) -> list[Enrollment]:
    """Enrolled/completed participants in enrollment order."""
    return list(session.scalars(
        select(Enrollment)
        .where(
            Enrollment.event_id == event_id,
            Enrollment.enrollment_type == EnrollmentType.PARTICIPANT,
            Enrollment.status.in_(_ACTIVE),
        )
        .order_by(Enrollment.enrolled_at, Enrollment.id)
    ).all())


def apply_auto_assign(
    session: Session,
    event: Event,
    *,
    threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> dict[int, int]:
    """Round-robin every schedule of a random-mode event.

    Returns ``{schedule_id: user_id}``; empty when the event is voluntary
    or has fewer than *threshold* participants.
    """
    if event.leader_assignment != LeaderAssignment.RANDOM:
        return {}

    participants = active_participants(session, event.id)
    if len(participants) < threshold:
        return {}

    schedules = list(session.scalars(
        select(ReadingSchedule)
        .where(ReadingSchedule.event_id == event.id)
        .order_by(ReadingSchedule.day_number)
    ).all())
    mapping = round_robin([s.id for s in schedules], [p.user_id for p in participants])
    for schedule in schedules:
        schedule.assigned_leader_id = mapping.get(schedule.id)
    session.flush()

    logger.info("Auto-assigned %d reading days of event %d across %d participants",
                len(mapping), event.id, len(participants))
    return mapping


def is_current_leader(
    session: Session,
    event: Event,
    user_id: int,
    today: date,
    *,
    window_days: int = constants.LEADER_WINDOW_DAYS,
) -> bool:
    """Event leader, or a daily leader within *window_days* from their day.

    A daily leader counts only while still an active participant.
    """
    if user_id == event.leader_id:
        return True
    earliest = today - timedelta(days=window_days - 1)
    hit = session.scalar(
        select(ReadingSchedule.id)
        .join(Enrollment, (Enrollment.event_id == ReadingSchedule.event_id)
              & (Enrollment.user_id == ReadingSchedule.assigned_leader_id))
        .where(
            ReadingSchedule.event_id == event.id,
            ReadingSchedule.assigned_leader_id == user_id,
            ReadingSchedule.reading_date <= today,
            ReadingSchedule.reading_date >= earliest,
            Enrollment.enrollment_type == EnrollmentType.PARTICIPANT,
            Enrollment.status.in_(_ACTIVE),
        ).limit(1)
    )
    return hit is not None


def release_leader_days(
    session: Session,
    event: Event,
    user_id: int,
    *,
    threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> int:
    """Unassign *user_id* from every reading day of *event*.

    Random-mode events are dealt again among the remaining participants.
    Returns the number of days released.
    """
    released = session.execute(
        update(ReadingSchedule)
        .where(
            ReadingSchedule.event_id == event.id,
            ReadingSchedule.assigned_leader_id == user_id,
        )
        .values(assigned_leader_id=None)
    ).rowcount
    if released:
        logger.info("Released %d reading days of event %d held by user %d",
                    released, event.id, user_id)
        apply_auto_assign(session, event, threshold=threshold)
    return released


def schedules_needing_backup(session: Session, event: Event, today: date) -> list[ReadingSchedule]:
    """Reading days that need someone to step in.

    A day needs a backup when nobody active leads it, or when it has
    passed with check-ins that received no flowers.
    """
    schedules = session.scalars(
        select(ReadingSchedule)
        .where(ReadingSchedule.event_id == event.id)
        .order_by(ReadingSchedule.day_number)
    ).all()
    active = {p.user_id for p in active_participants(session, event.id)}
    checked_in = set(session.scalars(
        select(CheckIn.schedule_id).where(CheckIn.event_id == event.id)
    ).all())
    rewarded = set(session.scalars(
        select(CheckIn.schedule_id)
        .join(Reward, Reward.check_in_id == CheckIn.id)
        .where(CheckIn.event_id == event.id)
    ).all())
    return [
        s for s in schedules
        if s.assigned_leader_id not in active
        or (s.reading_date <= today and s.id in checked_in and s.id not in rewarded)
    ]


def _schedule_of(session: Session, event_id: int, schedule_id: int) -> ReadingSchedule:
    schedule = session.get(ReadingSchedule, schedule_id)
    if schedule is None or schedule.event_id != event_id:
        raise ValidationError("Reading day does not belong to this event")
    return schedule


def _open_event(session: Session, event_id: int) -> Event:
    event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    if event.status == EventStatus.COMPLETED:
        raise StateConflictError("Event is already completed")
    return event


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def claim(
    engine: Engine,
    *,
    event_id: int,
    user_id: int,
    schedule_id: int,
    max_claims: int = constants.MAX_LEADER_CLAIMS,
) -> ServiceResult[ReadingSchedule]:
    """Volunteer *user_id* as daily leader of *schedule_id*."""
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.leader_assignment != LeaderAssignment.VOLUNTARY:
                raise StateConflictError("Daily leaders of this event are assigned automatically")
            if event.status == EventStatus.COMPLETED:
                raise StateConflictError("Event is already completed")

            schedule = _schedule_of(session, event_id, schedule_id)

            enrolled = any(p.user_id == user_id for p in active_participants(session, event_id))
            if not enrolled:
                raise AuthorizationError("Only enrolled participants can lead a reading day")

            claims = session.scalar(
                select(func.count(ReadingSchedule.id)).where(
                    ReadingSchedule.event_id == event_id,
                    ReadingSchedule.assigned_leader_id == user_id,
                )
            )
            if claims >= max_claims:
                raise StateConflictError(f"You can lead at most {max_claims} days of this event")

            result = session.execute(
                update(ReadingSchedule)
                .where(
                    ReadingSchedule.id == schedule_id,
                    ReadingSchedule.assigned_leader_id.is_(None),
                )
                .values(assigned_leader_id=user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise StateConflictError("This reading day already has a leader")
            session.refresh(schedule)

        logger.info("User %d claimed day %d of event %d", user_id, schedule.day_number, event_id)
        return ServiceResult.success(schedule)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def auto_assign(
    engine: Engine,
    event_id: int,
    *,
    threshold: int = constants.AUTO_ASSIGN_THRESHOLD,
) -> ServiceResult[dict[int, int]]:
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
        return ServiceResult.success(apply_auto_assign(session, event, threshold=threshold))


def check_current_leader(
    engine: Engine,
    event_id: int,
    user_id: int,
    today: date | None = None,
    *,
    window_days: int = constants.LEADER_WINDOW_DAYS,
) -> bool:
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return False
        return is_current_leader(
            session, event, user_id, today or date.today(), window_days=window_days
        )


def backup_assignment(
    engine: Engine,
    *,
    event_id: int,
    schedule_id: int,
    backup_leader_id: int,
    requester_id: int,
    today: date | None = None,
) -> ServiceResult[ReadingSchedule]:
    """Event leader hands an uncovered reading day to *backup_leader_id*.

    The backup is the event leader or an active participant, and the day
    must be one :func:`schedules_needing_backup` reports.
    """
    today = today or date.today()
    try:
        with get_session(engine) as session:
            event = _open_event(session, event_id)
            if requester_id != event.leader_id:
                raise AuthorizationError("Only the event leader can assign a backup")
            schedule = _schedule_of(session, event_id, schedule_id)

            active = {p.user_id for p in active_participants(session, event_id)}
            if backup_leader_id != event.leader_id and backup_leader_id not in active:
                raise ValidationError("Backup leader must take part in the event")
            if schedule not in schedules_needing_backup(session, event, today):
                raise StateConflictError("This reading day does not need a backup")

            schedule.assigned_leader_id = backup_leader_id

        logger.info("User %d backs up day %d of event %d",
                    backup_leader_id, schedule.day_number, event_id)
        return ServiceResult.success(schedule)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def reassign_leader(
    engine: Engine,
    *,
    event_id: int,
    schedule_id: int,
    new_leader_id: int,
    requester_id: int,
    today: date | None = None,
    window_days: int = constants.LEADER_WINDOW_DAYS,
) -> ServiceResult[ReadingSchedule]:
    """Hand a reading day to another participant.

    Allowed for the event leader and for anyone currently leading.  A
    later auto-assign run on a random-mode event deals the day again.
    """
    today = today or date.today()
    try:
        with get_session(engine) as session:
            event = _open_event(session, event_id)
            if not is_current_leader(session, event, requester_id, today, window_days=window_days):
                raise AuthorizationError("Only the event leader or a current leader can reassign")
            schedule = _schedule_of(session, event_id, schedule_id)
            if not any(p.user_id == new_leader_id for p in active_participants(session, event_id)):
                raise ValidationError("New leader must be an enrolled participant")

            previous = schedule.assigned_leader_id
            schedule.assigned_leader_id = new_leader_id

        logger.info("Day %d of event %d reassigned: %s -> %d",
                    schedule.day_number, event_id, previous, new_leader_id)
        return ServiceResult.success(schedule)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def assignment_statistics(
    engine: Engine,
    event_id: int,
    today: date | None = None,
) -> ServiceResult[AssignmentStats]:
    today = today or date.today()
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))

        schedules = session.scalars(
            select(ReadingSchedule).where(ReadingSchedule.event_id == event_id)
        ).all()
        workload: dict[int, LeaderWorkload] = {}
        for schedule in schedules:
            if schedule.assigned_leader_id is None:
                continue
            entry = workload.setdefault(
                schedule.assigned_leader_id, LeaderWorkload(schedule.assigned_leader_id)
            )
            entry.assigned_days += 1

        given = session.execute(
            select(Reward.giver_id, func.sum(Reward.amount))
            .join(CheckIn, Reward.check_in_id == CheckIn.id)
            .join(ReadingSchedule, CheckIn.schedule_id == ReadingSchedule.id)
            .where(
                Reward.event_id == event_id,
                ReadingSchedule.assigned_leader_id == Reward.giver_id,
            )
            .group_by(Reward.giver_id)
        ).all()
        for giver_id, amount in given:
            workload[giver_id].flowers_given = int(amount)

        total = len(schedules)
        assigned = sum(w.assigned_days for w in workload.values())
        return ServiceResult.success(AssignmentStats(
            total_days=total,
            assigned_days=assigned,
            unique_leaders=len(workload),
            assignment_rate=round(assigned / total * 100, 2) if total else 0.0,
            backup_needed=len(schedules_needing_backup(session, event, today)),
            workload=sorted(workload.values(), key=lambda w: w.user_id),
        ))
