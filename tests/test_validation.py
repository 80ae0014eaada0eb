"""
tests/test_validation.py — Event Field & Submission Rules
==========================================================
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from bloom.database.models import ActivityMode, FeeModel
from bloom.engine.validation import (
    EventCreate,
    EventUpdate,
    parse_event_fields,
    validate_submission,
)
from bloom.errors import ValidationError

TODAY = date(2025, 2, 1)


def _event(**overrides) -> SimpleNamespace:
    fields = dict(
        title="Slow Reading Week",
        description="Notes every evening.",
        book="Walden",
        start_date=date(2025, 3, 3),
        end_date=date(2025, 3, 9),
        max_participants=10,
        min_participants=2,
        fee_model=FeeModel.FREE,
        fee_amount=Decimal("0"),
        activity_mode=ActivityMode.NOTE_CHECKIN,
        meeting_link=None,
        location=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestEventSchemas:
    def test_valid_fields_are_coerced(self):
        fields = parse_event_fields(EventCreate, {
            "start_date": date(2025, 3, 3),
            "end_date": date(2025, 3, 9),
            "fee_model": "deposit",
            "fee_amount": "12.50",
        })
        assert fields["fee_model"] is FeeModel.DEPOSIT
        assert fields["fee_amount"] == Decimal("12.50")
        assert "title" not in fields

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_event_fields(EventCreate, {
                "start_date": date(2025, 3, 3),
                "end_date": date(2025, 3, 9),
                "status": "completed",
            })
        assert excinfo.value.violations == ["status: Extra inputs are not permitted"]

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_event_fields(EventCreate, {"start_date": date(2025, 3, 9), "end_date": date(2025, 3, 9)})
        assert excinfo.value.violations == ["End date must be after start date"]

    def test_threshold_range(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_event_fields(EventCreate, {
                "start_date": date(2025, 3, 3),
                "end_date": date(2025, 3, 9),
                "completion_threshold": 120,
            })
        assert excinfo.value.violations[0].startswith("completion_threshold:")

    def test_unknown_activity_mode(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_event_fields(EventUpdate, {"activity_mode": "podcast"})
        assert excinfo.value.violations[0].startswith("activity_mode:")

    def test_update_keeps_only_given_fields(self):
        assert parse_event_fields(EventUpdate, {"title": "Walden, slowly"}) == {"title": "Walden, slowly"}


class TestSubmissionValidation:
    def test_complete_event_passes(self):
        assert validate_submission(_event(), schedule_count=7, today=TODAY) == []

    def test_reports_every_problem_at_once(self):
        errors = validate_submission(
            _event(title="", description=" ", min_participants=12),
            schedule_count=0,
            today=TODAY,
        )
        assert "Title is required" in errors
        assert "Description is required" in errors
        assert "Minimum participants cannot exceed maximum participants" in errors
        assert "At least one reading day is required" in errors

    def test_start_date_must_be_in_the_future(self):
        errors = validate_submission(_event(), schedule_count=7, today=date(2025, 3, 3))
        assert errors == ["Start date must be in the future"]

    def test_free_event_cannot_charge(self):
        errors = validate_submission(_event(fee_amount=Decimal("10")), schedule_count=7, today=TODAY)
        assert errors == ["Free events cannot carry a fee amount"]

    def test_deposit_needs_amount(self):
        errors = validate_submission(_event(fee_model=FeeModel.DEPOSIT), schedule_count=7, today=TODAY)
        assert errors == ["Deposit and paid events need a fee amount greater than 0"]

    def test_video_conference_needs_link(self):
        errors = validate_submission(
            _event(activity_mode=ActivityMode.VIDEO_CONFERENCE), schedule_count=7, today=TODAY
        )
        assert errors == ["Video conference events need a meeting link"]

    def test_offline_meeting_needs_location(self):
        event = _event(activity_mode=ActivityMode.OFFLINE_MEETING, location="Main library, room 2")
        assert validate_submission(event, schedule_count=7, today=TODAY) == []
