"""
tests/factories.py — Seeding Helpers
=====================================

Calendar used throughout: D0 is Monday 2025-03-03 and the default event
runs D0..D0+6 without weekend rest (7 activity days).

Helpers always close their session before returning: the in-memory
engine shares a single connection across sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy import Engine, select

from bloom.database.engine import get_session
from bloom.database.models import ReadingSchedule, User
from bloom.services import (
    approval_service,
    checkin_service,
    enrollment_service,
    event_service,
    lifecycle_service,
)

D0 = date(2025, 3, 3)


def day(n: int) -> date:
    """D0 + *n* days."""
    return D0 + timedelta(days=n)


def at(when: date, hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    return datetime.combine(when, time(hour, minute, second))


def create_user(engine: Engine, nickname: str = "reader", *, is_admin: bool = False) -> int:
    with get_session(engine) as session:
        user = User(nickname=nickname, is_admin=is_admin)
        session.add(user)
        session.flush()
        return user.id


def event_fields(**overrides) -> dict:
    fields = dict(
        title="Slow Reading Week",
        book="Walden",
        description="A chapter a day, notes every evening.",
        start_date=D0,
        end_date=day(6),
        max_participants=20,
        min_participants=1,
        completion_threshold=80.0,
        weekend_rest=False,
    )
    fields.update(overrides)
    return fields


@dataclass
class RunningEvent:
    engine: Engine
    event_id: int
    leader_id: int
    admin_id: int
    participant_ids: list[int] = field(default_factory=list)

    def schedule_ids(self) -> list[int]:
        with get_session(self.engine) as session:
            return list(session.scalars(
                select(ReadingSchedule.id)
                .where(ReadingSchedule.event_id == self.event_id)
                .order_by(ReadingSchedule.day_number)
            ).all())

    def schedule_for(self, when: date) -> int:
        with get_session(self.engine) as session:
            return session.scalar(
                select(ReadingSchedule.id).where(
                    ReadingSchedule.event_id == self.event_id,
                    ReadingSchedule.reading_date == when,
                )
            )

    def check_in(self, user_id: int, when: date, content: str = "Read today's chapter.") -> int:
        result = checkin_service.check_in(
            self.engine,
            event_id=self.event_id,
            user_id=user_id,
            schedule_id=self.schedule_for(when),
            content=content,
            now=at(when, 8),
        )
        return result.unwrap().id


class EventFactory:
    """Walks events through the real services to the wanted state."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.admin_id = create_user(engine, "admin", is_admin=True)

    def draft(self, leader_id: int | None = None, **overrides) -> tuple[int, int]:
        leader_id = leader_id or create_user(self.engine, "leader")
        event = event_service.create_event(
            self.engine, leader_id=leader_id, now=at(day(-14)),
            **event_fields(**overrides),
        ).unwrap()
        return event.id, leader_id

    def approved(self, leader_id: int | None = None, **overrides) -> tuple[int, int]:
        event_id, leader_id = self.draft(leader_id, **overrides)
        approval_service.submit(
            self.engine, event_id=event_id, leader_id=leader_id, now=at(day(-10)),
        ).unwrap()
        approval_service.approve(
            self.engine, event_id=event_id, admin_id=self.admin_id, now=at(day(-9)),
        ).unwrap()
        return event_id, leader_id

    def enroll(self, running: RunningEvent, nickname: str, minute: int = 0) -> int:
        user_id = create_user(self.engine, nickname)
        enrollment_service.enroll(
            self.engine, event_id=running.event_id, user_id=user_id,
            now=at(day(-5), 9, minute),
        ).unwrap()
        running.participant_ids.append(user_id)
        return user_id

    def enrolled(self, participants: int = 3, **overrides) -> RunningEvent:
        event_id, leader_id = self.approved(**overrides)
        running = RunningEvent(self.engine, event_id, leader_id, self.admin_id)
        for index in range(participants):
            self.enroll(running, f"reader-{index + 1}", minute=index)
        return running

    def running(self, participants: int = 3, **overrides) -> RunningEvent:
        running = self.enrolled(participants, **overrides)
        started = lifecycle_service.start(
            self.engine, event_id=running.event_id, today=D0, now=at(D0, 0, 5)
        ).unwrap()
        assert started is True
        return running
