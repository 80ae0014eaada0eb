"""
bloom.engine.validation — Event Field & Submission Rules
=========================================================

Two layers of checks:

* :class:`EventCreate` / :class:`EventUpdate` are the pydantic schemas of
  the fields a leader may set on a draft.  Unknown keys, bad enum values
  and malformed numbers are rejected before anything touches the DB.
* :func:`validate_submission` is the readiness check run on submit.  It
  returns the list of violated rules (empty list = valid) so callers can
  report every problem at once.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as SchemaError

from bloom.database.models import ActivityMode, FeeModel, LeaderAssignment
from bloom.errors import ValidationError

_MODE_REQUIRED_FIELD: dict[str, tuple[str, str]] = {
    ActivityMode.VIDEO_CONFERENCE: ("meeting_link", "Video conference events need a meeting link"),
    ActivityMode.OFFLINE_MEETING: ("location", "Offline meetings need a location"),
}


# ---------------------------------------------------------------------------
# Draft field schemas
# ---------------------------------------------------------------------------
class EventCreate(BaseModel):
    """Every editable field of a draft.  Only the dates are mandatory;
    completeness is checked on submit."""

    model_config = ConfigDict(extra="forbid")

    title: str = ""
    book: str = ""
    description: str | None = None
    activity_mode: ActivityMode = ActivityMode.NOTE_CHECKIN
    meeting_link: str | None = None
    location: str | None = None
    start_date: date
    end_date: date
    max_participants: int = 20
    min_participants: int = 1
    completion_threshold: float = Field(80.0, gt=0, le=100)
    weekend_rest: bool = False
    fee_model: FeeModel = FeeModel.FREE
    fee_amount: Decimal = Decimal("0")
    leader_assignment: LeaderAssignment = LeaderAssignment.VOLUNTARY

    @model_validator(mode="after")
    def _date_order(self) -> EventCreate:
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class EventUpdate(BaseModel):
    """Partial edit of a draft; the merged result is re-checked as an
    :class:`EventCreate`."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    book: str | None = None
    description: str | None = None
    activity_mode: ActivityMode | None = None
    meeting_link: str | None = None
    location: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    max_participants: int | None = None
    min_participants: int | None = None
    completion_threshold: float | None = Field(None, gt=0, le=100)
    weekend_rest: bool | None = None
    fee_model: FeeModel | None = None
    fee_amount: Decimal | None = None
    leader_assignment: LeaderAssignment | None = None


def _describe(error: dict) -> str:
    message = error["msg"].removeprefix("Value error, ")
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {message}" if location else message


def parse_event_fields(schema: type[BaseModel], fields: dict[str, Any]) -> dict[str, Any]:
    """Validate *fields* against *schema* and return only the keys given.

    Raises :class:`bloom.errors.ValidationError` listing every problem.
    """
    try:
        return schema.model_validate(fields).model_dump(exclude_unset=True)
    except SchemaError as exc:
        raise ValidationError([_describe(error) for error in exc.errors()]) from None


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_submission(event: Any, schedule_count: int, today: date) -> list[str]:
    """Full readiness check run when a leader submits an event for approval."""
    errors: list[str] = []

    if _blank(event.title):
        errors.append("Title is required")
    if _blank(event.description):
        errors.append("Description is required")
    if _blank(event.book):
        errors.append("Book is required")

    if event.start_date is None or event.end_date is None:
        errors.append("Start and end dates are required")
    else:
        if event.start_date <= today:
            errors.append("Start date must be in the future")
        if event.end_date <= event.start_date:
            errors.append("End date must be after start date")

    if event.max_participants is None or event.max_participants <= 0:
        errors.append("Maximum participants must be greater than 0")
    elif event.min_participants is not None and event.min_participants > event.max_participants:
        errors.append("Minimum participants cannot exceed maximum participants")
    if event.min_participants is not None and event.min_participants < 0:
        errors.append("Minimum participants cannot be negative")

    amount = Decimal(event.fee_amount or 0)
    if event.fee_model == FeeModel.FREE:
        if amount != 0:
            errors.append("Free events cannot carry a fee amount")
    elif amount <= 0:
        errors.append("Deposit and paid events need a fee amount greater than 0")

    if schedule_count < 1:
        errors.append("At least one reading day is required")

    required = _MODE_REQUIRED_FIELD.get(event.activity_mode)
    if required is not None:
        field_name, message = required
        if _blank(getattr(event, field_name)):
            errors.append(message)

    return errors
