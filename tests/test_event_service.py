"""
tests/test_event_service.py — Draft Events & Schedules
=======================================================
"""

from __future__ import annotations

from bloom.database.models import EventStatus
from bloom.errors import AuthorizationError, StateConflictError, ValidationError
from bloom.services import approval_service, event_service
from factories import D0, at, day, event_fields


class TestCreateEvent:
    def test_creates_draft_with_one_schedule_per_day(self, db_engine, make_user):
        leader = make_user("leader")
        result = event_service.create_event(db_engine, leader_id=leader, **event_fields())
        assert result.ok
        event = event_service.get_event(db_engine, result.value.id).unwrap()
        assert event.status == EventStatus.DRAFT
        assert event.approval_status is None
        assert [s.day_number for s in event.schedules] == list(range(1, 8))
        assert event.schedules[0].reading_date == D0

    def test_weekend_rest_skips_weekend_schedules(self, db_engine, make_user):
        leader = make_user("leader")
        event_id = event_service.create_event(
            db_engine, leader_id=leader, **event_fields(end_date=day(13), weekend_rest=True)
        ).unwrap().id
        event = event_service.get_event(db_engine, event_id).unwrap()
        assert len(event.schedules) == 10
        assert all(s.reading_date.weekday() < 5 for s in event.schedules)

    def test_invalid_fields_create_nothing(self, db_engine, make_user):
        leader = make_user("leader")
        result = event_service.create_event(
            db_engine, leader_id=leader, **event_fields(end_date=D0)
        )
        assert not result.ok
        assert isinstance(result.error, ValidationError)
        assert event_service.list_events(db_engine) == []

    def test_fee_split(self, db_engine, make_user):
        leader = make_user("leader")
        event = event_service.create_event(
            db_engine, leader_id=leader, **event_fields(fee_model="deposit", fee_amount=50)
        ).unwrap()
        assert event.service_fee == 10
        assert event.deposit == 40


class TestUpdateEvent:
    def test_date_change_regenerates_schedules(self, events):
        event_id, leader = events.draft()
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=leader, end_date=day(2)
        )
        assert result.ok
        event = event_service.get_event(events.engine, event_id).unwrap()
        assert [s.reading_date for s in event.schedules] == [D0, day(1), day(2)]

    def test_only_leader_may_edit(self, events, make_user):
        event_id, _ = events.draft()
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=make_user("stranger"), title="Mine now"
        )
        assert isinstance(result.error, AuthorizationError)

    def test_pending_event_is_locked(self, events):
        event_id, leader = events.draft()
        approval_service.submit(events.engine, event_id=event_id, leader_id=leader, now=at(day(-10)))
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=leader, title="Too late"
        )
        assert isinstance(result.error, StateConflictError)

    def test_rejected_event_is_editable(self, events):
        event_id, leader = events.draft()
        approval_service.submit(events.engine, event_id=event_id, leader_id=leader, now=at(day(-10)))
        approval_service.reject(events.engine, event_id=event_id, admin_id=events.admin_id,
                                reason="Needs a longer description")
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=leader,
            description="A chapter a day with prompts for discussion.",
        )
        assert result.ok

    def test_update_rejects_unknown_fields(self, events):
        event_id, leader = events.draft()
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=leader, status="completed"
        )
        assert isinstance(result.error, ValidationError)
        assert result.error.violations == ["status: Extra inputs are not permitted"]

    def test_update_checks_merged_dates(self, events):
        event_id, leader = events.draft()
        result = event_service.update_event(
            events.engine, event_id=event_id, editor_id=leader, start_date=day(6)
        )
        assert result.error.violations == ["End date must be after start date"]
        event = event_service.get_event(events.engine, event_id).unwrap()
        assert event.start_date == D0
