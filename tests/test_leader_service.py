"""
tests/test_leader_service.py — Daily Leaders
=============================================
"""

from __future__ import annotations

from sqlalchemy import select

from bloom.database.engine import get_session
from bloom.database.models import Enrollment, EnrollmentStatus, LeaderAssignment
from bloom.errors import AuthorizationError, StateConflictError, ValidationError
from bloom.services import (
    enrollment_service,
    event_service,
    leader_service,
    lifecycle_service,
    reward_service,
)
from factories import D0, at, day


def _enrollment_id(engine, event_id, user_id) -> int:
    with get_session(engine) as session:
        return session.scalar(
            select(Enrollment.id).where(
                Enrollment.event_id == event_id, Enrollment.user_id == user_id
            )
        )


def _cancel(running, user_id):
    return enrollment_service.cancel(
        running.engine,
        enrollment_id=_enrollment_id(running.engine, running.event_id, user_id),
        user_id=user_id, now=at(day(-2)),
    ).unwrap()


def _leaders(engine, event_id) -> list:
    event = event_service.get_event(engine, event_id).unwrap()
    return [s.assigned_leader_id for s in event.schedules]


class TestClaim:
    def test_participant_claims_open_day(self, events):
        running = events.enrolled(participants=2)
        schedule_id = running.schedule_ids()[0]
        schedule = leader_service.claim(
            events.engine, event_id=running.event_id,
            user_id=running.participant_ids[0], schedule_id=schedule_id,
        ).unwrap()
        assert schedule.assigned_leader_id == running.participant_ids[0]

    def test_claimed_day_cannot_be_claimed_again(self, events):
        running = events.enrolled(participants=2)
        schedule_id = running.schedule_ids()[0]
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=running.participant_ids[0], schedule_id=schedule_id)
        result = leader_service.claim(events.engine, event_id=running.event_id,
                                      user_id=running.participant_ids[1], schedule_id=schedule_id)
        assert isinstance(result.error, StateConflictError)

    def test_claim_limit(self, events):
        running = events.enrolled(participants=1)
        reader = running.participant_ids[0]
        schedule_ids = running.schedule_ids()
        for schedule_id in schedule_ids[:3]:
            assert leader_service.claim(events.engine, event_id=running.event_id,
                                        user_id=reader, schedule_id=schedule_id).ok
        result = leader_service.claim(events.engine, event_id=running.event_id,
                                      user_id=reader, schedule_id=schedule_ids[3])
        assert isinstance(result.error, StateConflictError)

    def test_non_participant_cannot_claim(self, events, make_user):
        running = events.enrolled(participants=1)
        result = leader_service.claim(events.engine, event_id=running.event_id,
                                      user_id=make_user("outsider"),
                                      schedule_id=running.schedule_ids()[0])
        assert isinstance(result.error, AuthorizationError)

    def test_random_mode_rejects_claims(self, events):
        running = events.enrolled(participants=1, leader_assignment=LeaderAssignment.RANDOM)
        result = leader_service.claim(events.engine, event_id=running.event_id,
                                      user_id=running.participant_ids[0],
                                      schedule_id=running.schedule_ids()[0])
        assert isinstance(result.error, StateConflictError)


class TestAutoAssign:
    def test_below_threshold_assigns_nothing(self, events):
        running = events.enrolled(participants=2, leader_assignment=LeaderAssignment.RANDOM)
        event = event_service.get_event(events.engine, running.event_id).unwrap()
        assert all(s.assigned_leader_id is None for s in event.schedules)

    def test_round_robin_in_enrollment_order(self, events):
        running = events.enrolled(participants=3, leader_assignment=LeaderAssignment.RANDOM)
        event = event_service.get_event(events.engine, running.event_id).unwrap()
        a, b, c = running.participant_ids
        assert [s.assigned_leader_id for s in event.schedules] == [a, b, c, a, b, c, a]

    def test_reassigns_when_more_enroll(self, events):
        running = events.enrolled(participants=3, leader_assignment=LeaderAssignment.RANDOM)
        fourth = events.enroll(running, "late-reader", minute=30)
        event = event_service.get_event(events.engine, running.event_id).unwrap()
        assert event.schedules[3].assigned_leader_id == fourth

    def test_voluntary_events_untouched(self, events):
        running = events.enrolled(participants=3)
        assert leader_service.auto_assign(events.engine, running.event_id).unwrap() == {}


class TestCurrentLeader:
    def test_event_leader_is_always_current(self, events):
        running = events.enrolled(participants=1)
        assert leader_service.check_current_leader(
            events.engine, running.event_id, running.leader_id, day(100)
        )

    def test_daily_leader_window(self, events):
        running = events.enrolled(participants=1)
        reader = running.participant_ids[0]
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=reader, schedule_id=running.schedule_for(D0))
        check = leader_service.check_current_leader
        assert not check(events.engine, running.event_id, reader, day(-1))
        assert check(events.engine, running.event_id, reader, D0)
        assert check(events.engine, running.event_id, reader, day(2))
        assert not check(events.engine, running.event_id, reader, day(3))

    def test_cancelled_daily_leader_is_not_current(self, events):
        running = events.running(participants=2)
        reader = running.participant_ids[0]
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=reader, schedule_id=running.schedule_for(D0))
        with get_session(events.engine) as session:
            enrollment = session.get(
                Enrollment, _enrollment_id(events.engine, running.event_id, reader)
            )
            enrollment.status = EnrollmentStatus.CANCELLED
        assert not leader_service.check_current_leader(
            events.engine, running.event_id, reader, D0
        )


class TestCancelledLeader:
    def test_random_days_are_dealt_again(self, events):
        running = events.enrolled(participants=4, leader_assignment=LeaderAssignment.RANDOM)
        a, b, c, d = running.participant_ids
        assert _leaders(events.engine, running.event_id) == [a, b, c, d, a, b, c]

        _cancel(running, c)
        assert _leaders(events.engine, running.event_id) == [a, b, d, a, b, d, a]

    def test_below_threshold_days_are_left_open(self, events):
        running = events.enrolled(participants=3, leader_assignment=LeaderAssignment.RANDOM)
        a, b, c = running.participant_ids
        _cancel(running, c)
        assert _leaders(events.engine, running.event_id) == [a, b, None, a, b, None, a]

    def test_voluntary_claims_are_released(self, events):
        running = events.enrolled(participants=2)
        reader = running.participant_ids[0]
        schedule_id = running.schedule_ids()[1]
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=reader, schedule_id=schedule_id).unwrap()
        _cancel(running, reader)
        assert all(leader is None for leader in _leaders(events.engine, running.event_id))

    def test_cancelled_leader_cannot_complete_event(self, events):
        running = events.enrolled(participants=3, leader_assignment=LeaderAssignment.RANDOM)
        c = running.participant_ids[2]
        _cancel(running, c)
        lifecycle_service.start(events.engine, event_id=running.event_id,
                                today=D0, now=at(D0, 0, 5)).unwrap()

        assert not leader_service.check_current_leader(
            events.engine, running.event_id, c, day(2)
        )
        result = lifecycle_service.complete(
            events.engine, event_id=running.event_id, requester_id=c,
            today=day(2), now=at(day(2), 18),
        )
        assert isinstance(result.error, AuthorizationError)


class TestBackupAssignment:
    def _backup(self, running, backup_leader_id, *, requester_id=None, day_index=0):
        return leader_service.backup_assignment(
            running.engine, event_id=running.event_id,
            schedule_id=running.schedule_ids()[day_index],
            backup_leader_id=backup_leader_id,
            requester_id=running.leader_id if requester_id is None else requester_id,
            today=day(-1),
        )

    def test_event_leader_fills_open_day(self, events):
        running = events.enrolled(participants=2)
        schedule = self._backup(running, running.participant_ids[0]).unwrap()
        assert schedule.assigned_leader_id == running.participant_ids[0]

    def test_event_leader_can_back_up_personally(self, events):
        running = events.enrolled(participants=1)
        schedule = self._backup(running, running.leader_id).unwrap()
        assert schedule.assigned_leader_id == running.leader_id

    def test_only_event_leader_assigns(self, events):
        running = events.enrolled(participants=2)
        a, b = running.participant_ids
        result = self._backup(running, a, requester_id=b)
        assert isinstance(result.error, AuthorizationError)

    def test_covered_day_needs_no_backup(self, events):
        running = events.enrolled(participants=2)
        a, b = running.participant_ids
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=a, schedule_id=running.schedule_ids()[0]).unwrap()
        result = self._backup(running, b)
        assert isinstance(result.error, StateConflictError)

    def test_backup_must_take_part(self, events, make_user):
        running = events.enrolled(participants=1)
        result = self._backup(running, make_user("outsider"))
        assert isinstance(result.error, ValidationError)


class TestReassignLeader:
    def test_event_leader_reassigns(self, events):
        running = events.enrolled(participants=2)
        a, b = running.participant_ids
        schedule_id = running.schedule_ids()[2]
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=a, schedule_id=schedule_id).unwrap()
        schedule = leader_service.reassign_leader(
            events.engine, event_id=running.event_id, schedule_id=schedule_id,
            new_leader_id=b, requester_id=running.leader_id, today=day(-1),
        ).unwrap()
        assert schedule.assigned_leader_id == b

    def test_current_daily_leader_reassigns(self, events):
        running = events.running(participants=2)
        a, b = running.participant_ids
        leader_service.claim(events.engine, event_id=running.event_id,
                             user_id=a, schedule_id=running.schedule_for(D0)).unwrap()
        schedule = leader_service.reassign_leader(
            events.engine, event_id=running.event_id, schedule_id=running.schedule_for(day(1)),
            new_leader_id=b, requester_id=a, today=D0,
        ).unwrap()
        assert schedule.assigned_leader_id == b

    def test_plain_participant_cannot_reassign(self, events):
        running = events.running(participants=2)
        a, b = running.participant_ids
        result = leader_service.reassign_leader(
            events.engine, event_id=running.event_id, schedule_id=running.schedule_for(D0),
            new_leader_id=b, requester_id=a, today=D0,
        )
        assert isinstance(result.error, AuthorizationError)

    def test_new_leader_must_be_enrolled(self, events, make_user):
        running = events.enrolled(participants=1)
        result = leader_service.reassign_leader(
            events.engine, event_id=running.event_id, schedule_id=running.schedule_ids()[0],
            new_leader_id=make_user("outsider"), requester_id=running.leader_id, today=day(-1),
        )
        assert isinstance(result.error, ValidationError)


class TestAssignmentStatistics:
    def test_counts_days_flowers_and_gaps(self, events):
        running = events.running(participants=2)
        a, b = running.participant_ids
        schedule_ids = running.schedule_ids()
        for user_id, schedule_id in ((a, schedule_ids[0]), (a, schedule_ids[1]), (b, schedule_ids[2])):
            leader_service.claim(events.engine, event_id=running.event_id,
                                 user_id=user_id, schedule_id=schedule_id).unwrap()
        check_in_id = running.check_in(b, D0)
        reward_service.give(
            events.engine, event_id=running.event_id, giver_id=a, recipient_id=b,
            check_in_id=check_in_id, amount=1, confirmed=True, now=at(D0, 10),
        ).unwrap()
        # Day 1 passes with a check-in nobody rewarded.
        running.check_in(b, day(1))

        stats = leader_service.assignment_statistics(
            events.engine, running.event_id, today=day(1)
        ).unwrap()
        assert stats.total_days == 7
        assert stats.assigned_days == 3
        assert stats.unassigned_days == 4
        assert stats.unique_leaders == 2
        assert stats.assignment_rate == 42.86
        assert stats.backup_needed == 5
        assert [(w.user_id, w.assigned_days, w.flowers_given) for w in stats.workload] == [
            (a, 2, 1), (b, 1, 0),
        ]

    def test_empty_event(self, events):
        running = events.enrolled(participants=1)
        stats = leader_service.assignment_statistics(events.engine, running.event_id).unwrap()
        assert stats.assigned_days == 0
        assert stats.assignment_rate == 0.0
        assert stats.backup_needed == stats.total_days
