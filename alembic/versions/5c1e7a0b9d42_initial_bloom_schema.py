"""Initial Bloom schema

Revision ID: 5c1e7a0b9d42
Revises:
Create Date: 2026-10-17 09:12:40.118203

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c1e7a0b9d42'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create users, events and every table owned by an event."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("nickname", sa.String(100), nullable=False),
        sa.Column("is_admin", sa.Boolean, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
    )

    # --- events ---
    op.create_table(
        "events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("leader_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("book", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("activity_mode", sa.String(30), nullable=False),
        sa.Column("meeting_link", sa.String(500), nullable=True),
        sa.Column("location", sa.String(300), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("approval_status", sa.String(20), nullable=True),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column("min_participants", sa.Integer, nullable=False),
        sa.Column("completion_threshold", sa.Float, nullable=False),
        sa.Column("weekend_rest", sa.Boolean, nullable=True),
        sa.Column("fee_model", sa.String(20), nullable=False),
        sa.Column("fee_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("leader_assignment", sa.String(20), nullable=False),
        sa.Column("submitted_at", sa.DateTime, nullable=True),
        sa.Column("approved_by_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime, nullable=True),
        sa.Column("rejected_at", sa.DateTime, nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=True),
        sa.CheckConstraint("end_date > start_date", name="ck_events_date_order"),
    )
    op.create_index("ix_events_status", "events", ["status"])
    op.create_index("ix_events_approval_submitted", "events", ["approval_status", "submitted_at"])

    # --- reading_schedules ---
    op.create_table(
        "reading_schedules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reading_date", sa.Date, nullable=False),
        sa.Column("day_number", sa.Integer, nullable=False),
        sa.Column("assigned_leader_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.UniqueConstraint("event_id", "day_number", name="uq_schedules_event_day"),
        sa.UniqueConstraint("event_id", "reading_date", name="uq_schedules_event_date"),
    )

    # --- enrollments ---
    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("enrollment_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("completion_rate", sa.Float, nullable=False),
        sa.Column("check_in_count", sa.Integer, nullable=False),
        sa.Column("rewards_received_count", sa.Integer, nullable=False),
        sa.Column("rewards_received_amount", sa.Integer, nullable=False),
        sa.Column("rewards_given_count", sa.Integer, nullable=False),
        sa.Column("fee_paid", sa.Numeric(10, 2), nullable=True),
        sa.Column("fee_refunded", sa.Numeric(10, 2), nullable=True),
        sa.Column("refund_status", sa.String(20), nullable=False),
        sa.Column("enrolled_at", sa.DateTime, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("cancelled_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("event_id", "user_id", name="uq_enrollments_event_user"),
        sa.CheckConstraint(
            "completion_rate >= 0 AND completion_rate <= 100",
            name="ck_enrollments_completion_range",
        ),
    )
    op.create_index("ix_enrollments_event_status", "enrollments", ["event_id", "status"])

    # --- check_ins ---
    op.create_table(
        "check_ins",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("schedule_id", sa.Integer,
                  sa.ForeignKey("reading_schedules.id", ondelete="CASCADE"), nullable=False),
        sa.Column("enrollment_id", sa.Integer,
                  sa.ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("user_id", "schedule_id", name="uq_check_ins_user_schedule"),
    )
    op.create_index("ix_check_ins_event_user", "check_ins", ["event_id", "user_id"])

    # --- quotas ---
    op.create_table(
        "quotas",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("quota_date", sa.Date, nullable=False),
        sa.Column("max_allowance", sa.Integer, nullable=False),
        sa.Column("used", sa.Integer, nullable=False),
        sa.Column("give_count_today", sa.Integer, nullable=False),
        sa.Column("last_given_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("user_id", "event_id", "quota_date", name="uq_quotas_user_event_date"),
        sa.CheckConstraint("used >= 0 AND used <= max_allowance", name="ck_quotas_used_range"),
    )

    # --- rewards ---
    op.create_table(
        "rewards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("giver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("check_in_id", sa.Integer,
                  sa.ForeignKey("check_ins.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("comment", sa.Text, nullable=True),
        sa.Column("anonymous", sa.Boolean, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("amount >= 1", name="ck_rewards_amount_positive"),
    )
    op.create_index("ix_rewards_event_time", "rewards", ["event_id", "created_at"])
    op.create_index("ix_rewards_giver_time", "rewards", ["giver_id", "created_at"])

    # --- daily_ranking_snapshots ---
    op.create_table(
        "daily_ranking_snapshots",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("ranking_date", sa.Date, nullable=False),
        sa.Column("rankings", JSONType, nullable=False),
        sa.Column("total_amount", sa.Integer, nullable=False),
        sa.Column("recipient_count", sa.Integer, nullable=False),
        sa.Column("giver_count", sa.Integer, nullable=False),
        sa.Column("generated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("event_id", "ranking_date", name="uq_snapshots_event_date"),
    )

    # --- certificates ---
    op.create_table(
        "certificates",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("rank", sa.Integer, nullable=False),
        sa.Column("total_amount", sa.Integer, nullable=False),
        sa.Column("certificate_number", sa.String(40), nullable=False, unique=True),
        sa.Column("honor_level", sa.String(20), nullable=False),
        sa.Column("issued_at", sa.DateTime, nullable=False),
        sa.Column("expires_at", sa.Date, nullable=False),
        sa.UniqueConstraint("event_id", "rank", name="uq_certificates_event_rank"),
        sa.UniqueConstraint("event_id", "user_id", name="uq_certificates_event_user"),
        sa.CheckConstraint("rank >= 1 AND rank <= 3", name="ck_certificates_rank_range"),
    )

    # --- approval_log ---
    op.create_table(
        "approval_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.Integer, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_approval_log_event", "approval_log", ["event_id", "created_at"])

    # --- outbox_events ---
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("topic", sa.String(50), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("delivered_at", sa.DateTime, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("last_error", sa.Text, nullable=True),
    )
    op.create_index("ix_outbox_pending", "outbox_events", ["delivered_at", "id"])


def downgrade() -> None:
    """Drop every Bloom table, children first."""
    op.drop_index("ix_outbox_pending", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_approval_log_event", table_name="approval_log")
    op.drop_table("approval_log")
    op.drop_table("certificates")
    op.drop_table("daily_ranking_snapshots")
    op.drop_index("ix_rewards_giver_time", table_name="rewards")
    op.drop_index("ix_rewards_event_time", table_name="rewards")
    op.drop_table("rewards")
    op.drop_table("quotas")
    op.drop_index("ix_check_ins_event_user", table_name="check_ins")
    op.drop_table("check_ins")
    op.drop_index("ix_enrollments_event_status", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_table("reading_schedules")
    op.drop_index("ix_events_approval_submitted", table_name="events")
    op.drop_index("ix_events_status", table_name="events")
    op.drop_table("events")
    op.drop_table("users")
