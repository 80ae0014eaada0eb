"""
tests/test_lifecycle_service.py — Event Status State Machine
=============================================================
"""

from __future__ import annotations

from sqlalchemy import select

from bloom.database.engine import get_session
from bloom.database.models import EventStatus, OutboxEvent
from bloom.errors import AuthorizationError, EventNotActiveError, StateConflictError
from bloom.services import (
    approval_service,
    event_service,
    leader_service,
    lifecycle_service,
    reward_service,
)
from factories import D0, at, day


def _status(engine, event_id) -> str:
    return event_service.get_event(engine, event_id).unwrap().status


def _complete(running, requester_id, today):
    return lifecycle_service.complete(
        running.engine, event_id=running.event_id, requester_id=requester_id,
        today=today, now=at(today, 18),
    )


class TestOpenEnrollment:
    def test_approved_draft_opens(self, events):
        event_id, leader_id = events.draft()
        approval_service.submit(events.engine, event_id=event_id, leader_id=leader_id,
                                now=at(day(-10))).unwrap()
        approval_service.approve(events.engine, event_id=event_id, admin_id=events.admin_id,
                                 now=at(day(-9)), auto_open_enrollment=False).unwrap()
        assert _status(events.engine, event_id) == EventStatus.DRAFT

        opened = lifecycle_service.open_enrollment(events.engine, event_id=event_id,
                                                   admin_id=events.admin_id).unwrap()
        assert opened.status == EventStatus.ENROLLING

    def test_unapproved_draft_cannot_open(self, events):
        event_id, _ = events.draft()
        result = lifecycle_service.open_enrollment(events.engine, event_id=event_id)
        assert isinstance(result.error, StateConflictError)

    def test_non_admin_rejected(self, events, make_user):
        event_id, _ = events.draft()
        result = lifecycle_service.open_enrollment(events.engine, event_id=event_id,
                                                   admin_id=make_user("someone"))
        assert isinstance(result.error, AuthorizationError)


class TestStart:
    def test_starts_on_start_date(self, events):
        running = events.enrolled(participants=2)
        assert lifecycle_service.start(events.engine, event_id=running.event_id,
                                       today=D0, now=at(D0, 0, 5)).unwrap() is True
        event = event_service.get_event(events.engine, running.event_id).unwrap()
        assert event.status == EventStatus.IN_PROGRESS
        assert event.started_at == at(D0, 0, 5)

    def test_before_start_date_is_false(self, events):
        running = events.enrolled(participants=2)
        assert lifecycle_service.start(events.engine, event_id=running.event_id,
                                       today=day(-1)).unwrap() is False
        assert _status(events.engine, running.event_id) == EventStatus.ENROLLING

    def test_below_minimum_is_false(self, events):
        running = events.enrolled(participants=1, min_participants=2)
        assert lifecycle_service.start(events.engine, event_id=running.event_id,
                                       today=D0).unwrap() is False

    def test_not_enrolling_is_false(self, events):
        running = events.running(participants=1)
        assert lifecycle_service.start(events.engine, event_id=running.event_id,
                                       today=day(1)).unwrap() is False


class TestCompleteAuthorization:
    def test_event_leader_may_complete_early(self, events):
        running = events.running(participants=1)
        report = _complete(running, running.leader_id, day(2)).unwrap()
        assert report.event.status == EventStatus.COMPLETED

    def test_daily_leader_within_window(self, events):
        running = events.running(participants=2)
        reader = running.participant_ids[0]
        leader_service.claim(events.engine, event_id=running.event_id, user_id=reader,
                             schedule_id=running.schedule_for(day(2))).unwrap()
        assert _complete(running, reader, day(4)).ok

    def test_daily_leader_outside_window(self, events):
        running = events.running(participants=2)
        reader = running.participant_ids[0]
        leader_service.claim(events.engine, event_id=running.event_id, user_id=reader,
                             schedule_id=running.schedule_for(day(2))).unwrap()
        result = _complete(running, reader, day(5))
        assert isinstance(result.error, AuthorizationError)

    def test_admin_only_after_end(self, events):
        running = events.running(participants=1)
        early = _complete(running, events.admin_id, day(6))
        assert isinstance(early.error, StateConflictError)
        assert _complete(running, events.admin_id, day(7)).ok

    def test_stranger_rejected(self, events, make_user):
        running = events.running(participants=1)
        result = _complete(running, make_user("stranger"), day(8))
        assert isinstance(result.error, AuthorizationError)

    def test_system_only_after_end(self, events):
        running = events.running(participants=1)
        assert isinstance(_complete(running, None, day(6)).error, StateConflictError)
        assert _complete(running, None, day(7)).ok


class TestCompleted:
    def test_completed_is_terminal(self, events):
        running = events.running(participants=1)
        _complete(running, None, day(7)).unwrap()
        again = _complete(running, None, day(8))
        assert isinstance(again.error, StateConflictError)
        assert lifecycle_service.start(events.engine, event_id=running.event_id,
                                       today=day(8)).unwrap() is False

    def test_no_flowers_after_completion(self, events):
        running = events.running(participants=2)
        a, b = running.participant_ids
        check_in_id = running.check_in(b, D0)
        _complete(running, running.leader_id, D0).unwrap()
        result = reward_service.give(
            events.engine, event_id=running.event_id, giver_id=a, recipient_id=b,
            check_in_id=check_in_id, confirmed=True, now=at(D0, 20),
        )
        assert isinstance(result.error, EventNotActiveError)

    def test_completion_recomputes_enrollments_and_publishes(self, events):
        running = events.running(participants=1)
        reader = running.participant_ids[0]
        for offset in range(6):
            running.check_in(reader, day(offset))
        report = _complete(running, None, day(7)).unwrap()
        assert report.completed_enrollments == 0   # latched by the sixth check-in already
        with get_session(events.engine) as session:
            topics = session.scalars(select(OutboxEvent.topic)).all()
        assert "event.completed" in topics
        assert topics.count("enrollment.completed") == 1
