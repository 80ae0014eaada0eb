"""
bloom.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users              — Community members (admins flagged with ``is_admin``)
- events             — Reading events; aggregate root of schedules/enrollments
- reading_schedules  — One row per required reading day of an event
- enrollments        — A user's registration in an event, with aggregates
- check_ins          — Daily check-ins; the targets flowers are given to
- quotas             — Per (user, event, date) flower allowance
- rewards            — Append-only flowers given between participants
- daily_ranking_snapshots — Point-in-time daily leaderboards
- certificates       — Top-N certificates issued on completion
- approval_log       — Append-only submit/approve/reject trail
- outbox_events      — Transactional outbox drained by the dispatcher
"""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from bloom import constants

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Bloom ORM models."""


# ---------------------------------------------------------------------------
# Enums (stored as their string values)
# ---------------------------------------------------------------------------
class EventStatus(enum.StrEnum):
    DRAFT = "draft"
    ENROLLING = "enrolling"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ApprovalStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FeeModel(enum.StrEnum):
    FREE = "free"
    DEPOSIT = "deposit"
    PAID = "paid"


class LeaderAssignment(enum.StrEnum):
    VOLUNTARY = "voluntary"
    RANDOM = "random"


class ActivityMode(enum.StrEnum):
    NOTE_CHECKIN = "note_checkin"
    FREE_DISCUSSION = "free_discussion"
    VIDEO_CONFERENCE = "video_conference"
    OFFLINE_MEETING = "offline_meeting"


class EnrollmentType(enum.StrEnum):
    PARTICIPANT = "participant"
    OBSERVER = "observer"


class EnrollmentStatus(enum.StrEnum):
    ENROLLED = "enrolled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundStatus(enum.StrEnum):
    NONE = "none"
    PENDING = "pending"


class ApprovalAction(enum.StrEnum):
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    APPROVED = "approved"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nickname: Mapped[str] = mapped_column(String(100), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.nickname!r} admin={self.is_admin}>"


# ---------------------------------------------------------------------------
# Events — aggregate root
# ---------------------------------------------------------------------------
class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    leader_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    book: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    activity_mode: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ActivityMode.NOTE_CHECKIN
    )
    meeting_link: Mapped[str | None] = mapped_column(String(500), default=None)
    location: Mapped[str | None] = mapped_column(String(300), default=None)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.DRAFT
    )
    approval_status: Mapped[str | None] = mapped_column(String(20), default=None)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    min_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    completion_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    weekend_rest: Mapped[bool] = mapped_column(Boolean, default=False)

    fee_model: Mapped[str] = mapped_column(String(20), nullable=False, default=FeeModel.FREE)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    leader_assignment: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LeaderAssignment.VOLUNTARY
    )

    # Approval axis metadata
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    approved_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), default=None
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    rejection_reason: Mapped[str | None] = mapped_column(Text, default=None)

    # Status axis metadata
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    schedules: Mapped[list[ReadingSchedule]] = relationship(
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="ReadingSchedule.day_number",
    )
    enrollments: Mapped[list[Enrollment]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_events_date_order"),
        Index("ix_events_status", "status"),
        Index("ix_events_approval_submitted", "approval_status", "submitted_at"),
    )

    @property
    def service_fee(self) -> Decimal:
        return (self.fee_amount or Decimal("0")) * Decimal(str(constants.SERVICE_FEE_RATIO))

    @property
    def deposit(self) -> Decimal:
        return (self.fee_amount or Decimal("0")) * Decimal(str(constants.DEPOSIT_RATIO))

    @property
    def days_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def __repr__(self) -> str:
        return (
            f"<Event id={self.id} title={self.title!r} status={self.status} "
            f"approval={self.approval_status}>"
        )


# ---------------------------------------------------------------------------
# ReadingSchedule — one per required reading day
# ---------------------------------------------------------------------------
class ReadingSchedule(Base):
    __tablename__ = "reading_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    reading_date: Mapped[date] = mapped_column(Date, nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_leader_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), default=None
    )

    event: Mapped[Event] = relationship(back_populates="schedules")

    __table_args__ = (
        UniqueConstraint("event_id", "day_number", name="uq_schedules_event_day"),
        UniqueConstraint("event_id", "reading_date", name="uq_schedules_event_date"),
    )

    def __repr__(self) -> str:
        return f"<ReadingSchedule event={self.event_id} day={self.day_number} date={self.reading_date}>"


# ---------------------------------------------------------------------------
# Enrollment — owned by the (event, user) pair
# ---------------------------------------------------------------------------
class Enrollment(Base):
    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    enrollment_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrollmentType.PARTICIPANT
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrollmentStatus.ENROLLED
    )
    completion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    check_in_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rewards_received_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rewards_received_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rewards_given_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    fee_refunded: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    refund_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.NONE
    )
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    event: Mapped[Event] = relationship(back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_enrollments_event_user"),
        CheckConstraint(
            "completion_rate >= 0 AND completion_rate <= 100",
            name="ck_enrollments_completion_range",
        ),
        Index("ix_enrollments_event_status", "event_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in (EnrollmentStatus.ENROLLED, EnrollmentStatus.COMPLETED)

    @property
    def is_active_participant(self) -> bool:
        return self.is_active and self.enrollment_type == EnrollmentType.PARTICIPANT

    def __repr__(self) -> str:
        return (
            f"<Enrollment event={self.event_id} user={self.user_id} "
            f"status={self.status} rate={self.completion_rate}>"
        )


# ---------------------------------------------------------------------------
# CheckIn — daily reading note, target of flowers
# ---------------------------------------------------------------------------
class CheckIn(Base):
    __tablename__ = "check_ins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    schedule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("reading_schedules.id", ondelete="CASCADE"), nullable=False
    )
    enrollment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    __table_args__ = (
        UniqueConstraint("user_id", "schedule_id", name="uq_check_ins_user_schedule"),
        Index("ix_check_ins_event_user", "event_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<CheckIn id={self.id} user={self.user_id} schedule={self.schedule_id}>"


# ---------------------------------------------------------------------------
# Quota — the hot contended row per (user, event, date)
# ---------------------------------------------------------------------------
class Quota(Base):
    __tablename__ = "quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    quota_date: Mapped[date] = mapped_column(Date, nullable=False)
    max_allowance: Mapped[int] = mapped_column(
        Integer, nullable=False, default=constants.DEFAULT_DAILY_ALLOWANCE
    )
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    give_count_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_given_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        UniqueConstraint("user_id", "event_id", "quota_date", name="uq_quotas_user_event_date"),
        CheckConstraint("used >= 0 AND used <= max_allowance", name="ck_quotas_used_range"),
    )

    @property
    def remaining(self) -> int:
        return self.max_allowance - self.used

    def __repr__(self) -> str:
        return (
            f"<Quota user={self.user_id} event={self.event_id} "
            f"date={self.quota_date} used={self.used}/{self.max_allowance}>"
        )


# ---------------------------------------------------------------------------
# Reward — append-only flower
# ---------------------------------------------------------------------------
class Reward(Base):
    __tablename__ = "rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    giver_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    recipient_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    check_in_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("check_ins.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    comment: Mapped[str | None] = mapped_column(Text, default=None)
    anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        CheckConstraint("amount >= 1", name="ck_rewards_amount_positive"),
        Index("ix_rewards_event_time", "event_id", "created_at"),
        Index("ix_rewards_giver_time", "giver_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Reward id={self.id} {self.giver_id}→{self.recipient_id} "
            f"amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# DailyRankingSnapshot — point-in-time leaderboard
# ---------------------------------------------------------------------------
class DailyRankingSnapshot(Base):
    __tablename__ = "daily_ranking_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    ranking_date: Mapped[date] = mapped_column(Date, nullable=False)
    rankings: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    giver_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        UniqueConstraint("event_id", "ranking_date", name="uq_snapshots_event_date"),
    )

    def __repr__(self) -> str:
        return f"<DailyRankingSnapshot event={self.event_id} date={self.ranking_date}>"


# ---------------------------------------------------------------------------
# Certificate — at most one per (event, rank) and per (event, user)
# ---------------------------------------------------------------------------
class Certificate(Base):
    __tablename__ = "certificates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    certificate_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    honor_level: Mapped[str] = mapped_column(String(20), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    expires_at: Mapped[date] = mapped_column(Date, nullable=False)
    regenerated_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    regenerated_by_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", name="fk_certificates_regenerated_by"), default=None
    )

    __table_args__ = (
        UniqueConstraint("event_id", "rank", name="uq_certificates_event_rank"),
        UniqueConstraint("event_id", "user_id", name="uq_certificates_event_user"),
        CheckConstraint("rank >= 1 AND rank <= 3", name="ck_certificates_rank_range"),
    )

    def __repr__(self) -> str:
        return f"<Certificate {self.certificate_number} event={self.event_id} rank={self.rank}>"


# ---------------------------------------------------------------------------
# ApprovalLog — append-only approval trail
# ---------------------------------------------------------------------------
class ApprovalLog(Base):
    __tablename__ = "approval_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("ix_approval_log_event", "event_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ApprovalLog event={self.event_id} action={self.action}>"


# ---------------------------------------------------------------------------
# OutboxEvent — written with the core mutation, delivered after commit
# ---------------------------------------------------------------------------
class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)

    __table_args__ = (
        Index("ix_outbox_pending", "delivered_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<OutboxEvent id={self.id} topic={self.topic!r} delivered={self.delivered_at}>"
