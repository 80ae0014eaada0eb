"""
bloom.services.event_service — Draft Events & Reading Schedules
================================================================

Leaders create events as drafts and may edit them until they are
submitted (or again after a rejection).  Every create/edit regenerates
the reading schedule when the date range or weekend rule changed: one
:class:`~bloom.database.models.ReadingSchedule` per activity day,
numbered from 1.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from bloom.database.engine import get_session
from bloom.database.models import (
    ApprovalStatus,
    Event,
    EventStatus,
    ReadingSchedule,
    User,
)
from bloom.engine.calendar import activity_days
from bloom.engine.validation import EventCreate, EventUpdate, parse_event_fields
from bloom.errors import (
    AuthorizationError,
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
)

logger = logging.getLogger(__name__)

_SCHEDULE_FIELDS = frozenset({"start_date", "end_date", "weekend_rest"})


def _current_fields(event: Event) -> dict[str, Any]:
    return {name: getattr(event, name) for name in EventCreate.model_fields}


def _apply(event: Event, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(event, key, value)


def rebuild_schedules(session: Session, event: Event) -> list[ReadingSchedule]:
    """Replace the event's schedules with one row per activity day."""
    if event.schedules:
        event.schedules.clear()
        # Deletes must hit the DB before the new (event, day) rows.
        session.flush()
    event.schedules.extend(
        ReadingSchedule(reading_date=day, day_number=number)
        for number, day in enumerate(activity_days(event), start=1)
    )
    session.flush()
    return list(event.schedules)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def create_event(
    engine: Engine,
    *,
    leader_id: int,
    now: datetime | None = None,
    **fields: Any,
) -> ServiceResult[Event]:
    """Create a draft event led by *leader_id* with its reading schedule."""
    now = now or datetime.now()
    try:
        fields = parse_event_fields(EventCreate, fields)
        with get_session(engine) as session:
            if session.get(User, leader_id) is None:
                raise NotFoundError(f"User {leader_id} not found")
            event = Event(leader_id=leader_id, status=EventStatus.DRAFT,
                          created_at=now, updated_at=now)
            _apply(event, fields)
            session.add(event)
            session.flush()
            schedules = rebuild_schedules(session, event)

        logger.info("Event %d %r created by user %d with %d reading days",
                    event.id, event.title, leader_id, len(schedules))
        return ServiceResult.success(event)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def update_event(
    engine: Engine,
    *,
    event_id: int,
    editor_id: int,
    now: datetime | None = None,
    **fields: Any,
) -> ServiceResult[Event]:
    """Edit a draft that is unsubmitted or was rejected."""
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.leader_id != editor_id:
                raise AuthorizationError("Only the event leader can edit this event")
            if event.status != EventStatus.DRAFT or event.approval_status not in (
                None, ApprovalStatus.REJECTED
            ):
                raise StateConflictError("Only unsubmitted or rejected drafts can be edited")

            fields = parse_event_fields(EventUpdate, fields)
            parse_event_fields(EventCreate, {**_current_fields(event), **fields})

            _apply(event, fields)
            event.updated_at = now
            if _SCHEDULE_FIELDS & set(fields):
                rebuild_schedules(session, event)
            session.flush()

        logger.info("Event %d updated (%s)", event_id, ", ".join(sorted(fields)))
        return ServiceResult.success(event)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def get_event(engine: Engine, event_id: int) -> ServiceResult[Event]:
    """Load an event with its schedules and enrollments."""
    with get_session(engine) as session:
        event = session.scalar(
            select(Event)
            .where(Event.id == event_id)
            .options(selectinload(Event.schedules), selectinload(Event.enrollments))
        )
    if event is None:
        return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
    return ServiceResult.success(event)


def list_events(engine: Engine, *, status: str | None = None) -> list[Event]:
    with get_session(engine) as session:
        stmt = select(Event).order_by(Event.start_date, Event.id)
        if status is not None:
            stmt = stmt.where(Event.status == status)
        return list(session.scalars(stmt).all())
