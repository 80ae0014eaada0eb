"""
bloom.services.ranking_service — Daily & Final Leaderboards
============================================================

Loads the reward rows of an event for a time window and persists the
ordering produced by :func:`bloom.engine.ranking.rank_recipients`.

A daily snapshot is a point-in-time view keyed by (event, date).  Asking
for an existing date returns the stored snapshot unchanged; ``force=True``
regenerates it in place.  A concurrent first generation that loses the
unique-constraint race returns the winner's row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bloom.database.engine import get_session
from bloom.database.models import (
    ApprovalStatus,
    CheckIn,
    DailyRankingSnapshot,
    Event,
    EventStatus,
    Reward,
)
from bloom.engine.calendar import day_bounds, event_bounds, is_activity_day
from bloom.engine.events import Topic
from bloom.engine.ranking import RankEntry, RewardRow, rank_recipients, summarize
from bloom.errors import (
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
)
from bloom.services.outbox_service import publish

logger = logging.getLogger(__name__)

_RANKABLE = (EventStatus.IN_PROGRESS, EventStatus.COMPLETED)


def load_reward_rows(session: Session, event_id: int, start: datetime, end: datetime) -> list[RewardRow]:
    """Rewards on check-ins of *event_id* created in ``[start, end)``."""
    rows = session.execute(
        select(Reward.recipient_id, Reward.giver_id, Reward.amount, Reward.created_at)
        .join(CheckIn, CheckIn.id == Reward.check_in_id)
        .where(
            CheckIn.event_id == event_id,
            Reward.created_at >= start,
            Reward.created_at < end,
        )
        .order_by(Reward.created_at, Reward.id)
    ).all()
    return [
        RewardRow(recipient_id=r.recipient_id, giver_id=r.giver_id,
                  amount=r.amount, created_at=r.created_at)
        for r in rows
    ]


def compute_final_ranking(session: Session, event: Event) -> list[RankEntry]:
    start, end = event_bounds(event)
    return rank_recipients(load_reward_rows(session, event.id, start, end))


def snapshot_entries(snapshot: DailyRankingSnapshot) -> list[RankEntry]:
    return [RankEntry.from_dict(raw) for raw in snapshot.rankings or []]


def _snapshot_query(event_id: int, ranking_date: date):
    return select(DailyRankingSnapshot).where(
        DailyRankingSnapshot.event_id == event_id,
        DailyRankingSnapshot.ranking_date == ranking_date,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def daily_ranking(
    engine: Engine,
    *,
    event_id: int,
    ranking_date: date,
    force: bool = False,
    now: datetime | None = None,
) -> ServiceResult[DailyRankingSnapshot]:
    """Generate (or return) the leaderboard of *ranking_date*."""
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.approval_status != ApprovalStatus.APPROVED or event.status not in _RANKABLE:
                raise StateConflictError("Rankings exist only for running or completed events")
            if not is_activity_day(event, ranking_date):
                raise StateConflictError(f"{ranking_date.isoformat()} is not an activity day")

            existing = session.scalar(_snapshot_query(event_id, ranking_date))
            if existing is not None and not force:
                return ServiceResult.success(existing)

            rows = load_reward_rows(session, event_id, *day_bounds(ranking_date))
            entries = rank_recipients(rows)
            summary = summarize(rows)
            values = dict(
                rankings=[entry.to_dict() for entry in entries],
                total_amount=summary.total_amount,
                recipient_count=summary.recipient_count,
                giver_count=summary.giver_count,
                generated_at=now,
            )

            if existing is not None:
                for key, value in values.items():
                    setattr(existing, key, value)
                snapshot = existing
            else:
                try:
                    with session.begin_nested():   # SAVEPOINT
                        snapshot = DailyRankingSnapshot(
                            event_id=event_id, ranking_date=ranking_date, **values
                        )
                        session.add(snapshot)
                        session.flush()
                except IntegrityError:
                    # Generated concurrently; the stored one wins.
                    return ServiceResult.success(
                        session.scalars(_snapshot_query(event_id, ranking_date)).one()
                    )

            session.flush()
            publish(session, Topic.RANKING_GENERATED, {
                "event_id": event_id,
                "snapshot_id": snapshot.id,
                "ranking_date": ranking_date.isoformat(),
                "top_user_ids": [entry.user_id for entry in entries[:3]],
                "regenerated": existing is not None,
            }, now=now)

        logger.info("Daily ranking for event %d on %s: %d recipients, %d flowers%s",
                    event_id, ranking_date, summary.recipient_count, summary.total_amount,
                    " (forced)" if existing is not None else "")
        return ServiceResult.success(snapshot)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def final_ranking(engine: Engine, event_id: int) -> ServiceResult[list[RankEntry]]:
    """Leaderboard over the whole event range; completed events only."""
    with get_session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
        if event.status != EventStatus.COMPLETED:
            return ServiceResult.failure(StateConflictError("Event is not completed yet"))
        return ServiceResult.success(compute_final_ranking(session, event))


def get_snapshot(engine: Engine, event_id: int, ranking_date: date) -> DailyRankingSnapshot | None:
    with get_session(engine) as session:
        return session.scalar(_snapshot_query(event_id, ranking_date))
