"""
bloom.services.lifecycle_service — Event Status State Machine
==============================================================

::

    draft ──open──▶ enrolling ──start──▶ in_progress ──complete──▶ completed

``open`` requires an approved event.  ``start`` is a guarded transition
that answers False instead of failing when its guard does not hold.
``complete`` is terminal: it recomputes every enrollment, freezes the
final ranking and issues certificates in the same transaction, after
which no further flowers are accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import Engine, select

from bloom import constants
from bloom.database.engine import get_session
from bloom.database.models import (
    ApprovalStatus,
    Certificate,
    Enrollment,
    EnrollmentStatus,
    Event,
    EventStatus,
    User,
)
from bloom.engine.events import Topic
from bloom.engine.ranking import RankEntry
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
)
from bloom.services.approval_service import require_admin
from bloom.services.certificate_service import issue_for_ranking
from bloom.services.enrollment_service import recompute_enrollment
from bloom.services.leader_service import active_participants, is_current_leader
from bloom.services.outbox_service import publish
from bloom.services.ranking_service import compute_final_ranking

logger = logging.getLogger(__name__)


@dataclass
class CompletionReport:
    event: Event
    ranking: list[RankEntry] = field(default_factory=list)
    certificates: list[Certificate] = field(default_factory=list)
    completed_enrollments: int = 0


def open_enrollment(
    engine: Engine,
    *,
    event_id: int,
    admin_id: int | None = None,
    now: datetime | None = None,
) -> ServiceResult[Event]:
    """Move an approved draft to ``enrolling``.  ``admin_id=None`` is the system."""
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            if admin_id is not None:
                require_admin(session, admin_id)
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.approval_status != ApprovalStatus.APPROVED:
                raise StateConflictError("Only approved events can open enrollment")
            if event.status != EventStatus.DRAFT:
                raise StateConflictError(f"Event is already {event.status}")
            event.status = EventStatus.ENROLLING
            event.updated_at = now
        logger.info("Event %d open for enrollment", event_id)
        return ServiceResult.success(event)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def start(
    engine: Engine,
    *,
    event_id: int,
    today: date | None = None,
    now: datetime | None = None,
) -> ServiceResult[bool]:
    """Start an enrolling event when its guard holds.

    Guard: approved, ``today >= start_date`` and at least
    ``min_participants`` active participants.  A failing guard is a
    successful result carrying ``False``.
    """
    now = now or datetime.now()
    today = today or now.date()
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
        if (event.status != EventStatus.ENROLLING
                or event.approval_status != ApprovalStatus.APPROVED
                or today < event.start_date):
            return ServiceResult.success(False)
        enrolled = len(active_participants(session, event_id))
        if enrolled < event.min_participants:
            logger.info("Event %d not started: %d/%d participants",
                        event_id, enrolled, event.min_participants)
            return ServiceResult.success(False)

        event.status = EventStatus.IN_PROGRESS
        event.started_at = now
        publish(session, Topic.EVENT_STARTED, {
            "event_id": event.id,
            "participants": enrolled,
            "started_at": now.isoformat(),
        }, now=now)

    logger.info("Event %d started with %d participants", event_id, enrolled)
    return ServiceResult.success(True)


def complete(
    engine: Engine,
    *,
    event_id: int,
    requester_id: int | None = None,
    today: date | None = None,
    now: datetime | None = None,
    window_days: int = constants.LEADER_WINDOW_DAYS,
    top_n: int = constants.CERTIFICATE_TOP_N,
    validity_years: int = constants.CERTIFICATE_VALIDITY_YEARS,
) -> ServiceResult[CompletionReport]:
    """Finish a running event.

    Allowed for the current leader at any time, and for an admin or the
    system (``requester_id=None``) once ``today > end_date``.
    """
    now = now or datetime.now()
    today = today or now.date()
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id, with_for_update=True)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.status == EventStatus.COMPLETED:
                raise StateConflictError("Event is already completed")
            if event.status != EventStatus.IN_PROGRESS:
                raise StateConflictError("Only running events can be completed")

            ended = today > event.end_date
            if requester_id is None:
                if not ended:
                    raise StateConflictError("Event has not ended yet")
            elif not is_current_leader(session, event, requester_id, today, window_days=window_days):
                requester = session.get(User, requester_id)
                if requester is None or not requester.is_admin:
                    raise AuthorizationError("Only the current leader can complete this event")
                if not ended:
                    raise StateConflictError("Admins can complete an event only after it ends")

            report = CompletionReport(event=event)
            enrollments = session.scalars(
                select(Enrollment).where(
                    Enrollment.event_id == event_id,
                    Enrollment.status != EnrollmentStatus.CANCELLED,
                )
            ).all()
            for enrollment in enrollments:
                if recompute_enrollment(session, enrollment, event, now=now):
                    report.completed_enrollments += 1

            event.status = EventStatus.COMPLETED
            event.completed_at = now
            session.flush()

            report.ranking = compute_final_ranking(session, event)
            report.certificates = issue_for_ranking(
                session, event, report.ranking, n=top_n, now=now, validity_years=validity_years,
            )
            publish(session, Topic.EVENT_COMPLETED, {
                "event_id": event.id,
                "completed_by": requester_id,
                "completed_at": now.isoformat(),
                "top_user_ids": [entry.user_id for entry in report.ranking[:top_n]],
            }, now=now)

        logger.info("Event %d completed: %d recipients ranked, %d certificates issued",
                    event_id, len(report.ranking), len(report.certificates))
        return ServiceResult.success(report)
    except BloomError as exc:
        return ServiceResult.failure(exc)
