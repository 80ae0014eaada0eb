"""
bloom.services.quota_service — Daily Flower Quota Ledger
=========================================================

One :class:`~bloom.database.models.Quota` row per (user, event, date),
created lazily on first use and never rolled over.

Creation is race-safe: the insert runs inside a SAVEPOINT and a losing
concurrent insert (unique violation) re-selects the winner's row.

Read-only views such as the history and the usage warning never create rows.

Consumption is a single conditional UPDATE::

    UPDATE quotas SET used = used + :n
     WHERE id = :id AND used + :n <= max_allowance

The database evaluates check and write as one statement, so the sum of
successful consumptions can never exceed ``max_allowance`` no matter how
calls interleave.  A zero rowcount means the allowance could not cover
the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import Engine, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session, retry_transient
from bloom.database.models import ApprovalStatus, Event, EventStatus, Quota
from bloom.engine.calendar import is_activity_day
from bloom.errors import (
    BloomError,
    EventNotActiveError,
    InsufficientQuotaError,
    NotFoundError,
    ServiceResult,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class QuotaInfo:
    user_id: int
    event_id: int
    quota_date: date
    used: int
    max_allowance: int
    give_count_today: int
    last_given_at: datetime | None
    is_activity_day: bool

    @property
    def remaining(self) -> int:
        return self.max_allowance - self.used

    @property
    def usage_percentage(self) -> float:
        if self.max_allowance <= 0:
            return 0.0
        return round(self.used / self.max_allowance * 100, 2)


@dataclass(frozen=True, slots=True)
class QuotaStats:
    """Aggregate of every quota row an event has for one day."""

    event_id: int
    quota_date: date
    active_givers: int
    total_used: int
    total_allowance: int
    exhausted_givers: int

    @property
    def usage_percentage(self) -> float:
        if self.total_allowance <= 0:
            return 0.0
        return round(self.total_used / self.total_allowance * 100, 2)


@dataclass(frozen=True, slots=True)
class QuotaWarning:
    should_warn: bool
    remaining: int = 0
    usage_percentage: float = 0.0
    message: str | None = None


# ---------------------------------------------------------------------------
# Session-level helpers (shared with reward_service)
# ---------------------------------------------------------------------------
def ensure_rewardable(event: Event, day: date) -> None:
    """Raise :class:`EventNotActiveError` unless flowers can flow on *day*."""
    if event.approval_status != ApprovalStatus.APPROVED or event.status != EventStatus.IN_PROGRESS:
        raise EventNotActiveError(f"Event {event.id} is not accepting flowers ({event.status})")
    if not is_activity_day(event, day):
        raise EventNotActiveError(f"{day.isoformat()} is not an activity day of event {event.id}")


def quota_query(user_id: int, event_id: int, quota_date: date):
    return select(Quota).where(
        Quota.user_id == user_id,
        Quota.event_id == event_id,
        Quota.quota_date == quota_date,
    )


def get_or_create_quota(
    session: Session,
    user_id: int,
    event_id: int,
    quota_date: date,
    *,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
    lock: bool = False,
) -> Quota:
    """Fetch the quota row for the key, inserting it when absent.

    With *lock* the row is selected ``FOR UPDATE`` (PostgreSQL; SQLite
    already holds the database write lock under ``BEGIN IMMEDIATE``).
    """
    stmt = quota_query(user_id, event_id, quota_date)
    if lock:
        stmt = stmt.with_for_update()

    quota = session.scalar(stmt)
    if quota is not None:
        return quota

    try:
        with session.begin_nested():   # SAVEPOINT
            quota = Quota(
                user_id=user_id,
                event_id=event_id,
                quota_date=quota_date,
                max_allowance=max_allowance,
                used=0,
            )
            session.add(quota)
            session.flush()
        return quota
    except IntegrityError:
        # A concurrent first access inserted the row; use theirs.
        logger.debug("Quota row race lost for user=%d event=%d date=%s",
                     user_id, event_id, quota_date)
        return session.scalars(stmt).one()


def consume_from(session: Session, quota: Quota, amount: int) -> Quota:
    """Atomically add *amount* to ``used`` or raise :class:`InsufficientQuotaError`."""
    if amount < 1:
        raise ValidationError("Amount must be at least 1")

    result = session.execute(
        update(Quota)
        .where(Quota.id == quota.id, Quota.used + amount <= Quota.max_allowance)
        .values(used=Quota.used + amount)
        .execution_options(synchronize_session=False)
    )
    session.refresh(quota)

    if result.rowcount == 0:
        logger.info("Quota exhausted for user=%d event=%d date=%s (%d/%d, wanted %d)",
                    quota.user_id, quota.event_id, quota.quota_date,
                    quota.used, quota.max_allowance, amount)
        raise InsufficientQuotaError(
            remaining=quota.remaining, used=quota.used, max_allowance=quota.max_allowance
        )
    return quota


def quota_info_from(event: Event, quota: Quota | None, user_id: int, day: date,
               max_allowance: int) -> QuotaInfo:
    return QuotaInfo(
        user_id=user_id,
        event_id=event.id,
        quota_date=day,
        used=quota.used if quota else 0,
        max_allowance=quota.max_allowance if quota else max_allowance,
        give_count_today=quota.give_count_today if quota else 0,
        last_given_at=quota.last_given_at if quota else None,
        is_activity_day=is_activity_day(event, day),
    )


def shared_event_query(event_id: int):
    """Event row locked FOR SHARE.

    Flowers are spent under this lock; ``complete`` takes the row FOR
    UPDATE, so it waits for in-flight gives and later gives see the
    completed status.
    """
    return select(Event).where(Event.id == event_id).with_for_update(read=True)


def _require_event(session: Session, event_id: int, *, lock: bool = False) -> Event:
    event = session.scalar(shared_event_query(event_id)) if lock else session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    return event


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def quota_for(
    engine: Engine,
    user_id: int,
    event_id: int,
    quota_date: date,
    *,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
) -> ServiceResult[Quota]:
    """Return the quota row for the key, creating it with ``used=0`` if absent."""
    try:
        with get_session(engine) as session:
            _require_event(session, event_id)
            quota = get_or_create_quota(
                session, user_id, event_id, quota_date, max_allowance=max_allowance
            )
        return ServiceResult.success(quota)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def can_give(
    engine: Engine,
    user_id: int,
    event_id: int,
    amount: int = 1,
    quota_date: date | None = None,
    *,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
) -> bool:
    """Non-mutating check: activity day, active event and enough allowance."""
    day = quota_date or date.today()
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None or amount < 1:
            return False
        try:
            ensure_rewardable(event, day)
        except EventNotActiveError:
            return False
        quota = session.scalar(quota_query(user_id, event_id, day))
        remaining = quota.remaining if quota else max_allowance
        return remaining >= amount


def consume(
    engine: Engine,
    user_id: int,
    event_id: int,
    amount: int,
    quota_date: date | None = None,
    *,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
    retry_attempts: int = constants.CONSUME_RETRY_ATTEMPTS,
) -> ServiceResult[Quota]:
    """Spend *amount* from the user's allowance for *quota_date*.

    Fails with :class:`InsufficientQuotaError` (``used`` unchanged) or
    :class:`EventNotActiveError`; lock contention is retried and then
    reported as :class:`~bloom.errors.ConcurrencyConflictError`.
    """
    day = quota_date or date.today()

    def _attempt() -> Quota:
        with get_session(engine) as session:
            event = _require_event(session, event_id, lock=True)
            ensure_rewardable(event, day)
            quota = get_or_create_quota(
                session, user_id, event_id, day, max_allowance=max_allowance, lock=True
            )
            return consume_from(session, quota, amount)

    try:
        quota = retry_transient(_attempt, attempts=retry_attempts, label="quota consume")
    except BloomError as exc:
        return ServiceResult.failure(exc)
    return ServiceResult.success(quota)


def quota_info(
    engine: Engine,
    user_id: int,
    event_id: int,
    quota_date: date | None = None,
    *,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
) -> ServiceResult[QuotaInfo]:
    """Snapshot of the allowance without creating a row."""
    day = quota_date or date.today()
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
        quota = session.scalar(quota_query(user_id, event_id, day))
        return ServiceResult.success(quota_info_from(event, quota, user_id, day, max_allowance))


def quota_history(
    engine: Engine,
    user_id: int,
    event_id: int,
    *,
    days: int = constants.QUOTA_HISTORY_DAYS,
    until: date | None = None,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
) -> ServiceResult[list[QuotaInfo]]:
    """One snapshot per day for the *days* days ending *until*, oldest first.

    Days without a row report zero usage; no rows are created.
    """
    if days < 1:
        return ServiceResult.failure(ValidationError("History needs at least one day"))
    until = until or date.today()
    since = until - timedelta(days=days - 1)
    with Session(engine) as session:
        event = session.get(Event, event_id)
        if event is None:
            return ServiceResult.failure(NotFoundError(f"Event {event_id} not found"))
        rows = {
            q.quota_date: q
            for q in session.scalars(
                select(Quota).where(
                    Quota.user_id == user_id,
                    Quota.event_id == event_id,
                    Quota.quota_date.between(since, until),
                )
            )
        }
        history = [
            quota_info_from(event, rows.get(day), user_id, day, max_allowance)
            for day in (since + timedelta(days=n) for n in range(days))
        ]
    return ServiceResult.success(history)


def quota_warning(
    engine: Engine,
    user_id: int,
    event_id: int,
    quota_date: date | None = None,
    *,
    threshold: float = constants.QUOTA_WARNING_RATIO,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
) -> ServiceResult[QuotaWarning]:
    """Warn once *threshold* of the day's allowance is spent.

    Never warns on a day the event is not active.
    """
    result = quota_info(engine, user_id, event_id, quota_date, max_allowance=max_allowance)
    if not result.ok:
        return ServiceResult.failure(result.error)
    info = result.value
    if not info.is_activity_day or info.max_allowance <= 0:
        return ServiceResult.success(QuotaWarning(should_warn=False))

    if info.used / info.max_allowance < threshold:
        return ServiceResult.success(QuotaWarning(
            should_warn=False, remaining=info.remaining, usage_percentage=info.usage_percentage,
        ))
    return ServiceResult.success(QuotaWarning(
        should_warn=True,
        remaining=info.remaining,
        usage_percentage=info.usage_percentage,
        message=f"Today's flowers are almost used up: {info.remaining} left",
    ))


def event_quota_stats(engine: Engine, event_id: int, quota_date: date) -> QuotaStats:
    """Aggregate usage across all givers of *event_id* on *quota_date*."""
    with Session(engine) as session:
        row = session.execute(
            select(
                func.count(Quota.id),
                func.coalesce(func.sum(Quota.used), 0),
                func.coalesce(func.sum(Quota.max_allowance), 0),
                func.coalesce(func.sum(case((Quota.used >= Quota.max_allowance, 1), else_=0)), 0),
            ).where(Quota.event_id == event_id, Quota.quota_date == quota_date)
        ).one()

    return QuotaStats(
        event_id=event_id,
        quota_date=quota_date,
        active_givers=row[0],
        total_used=int(row[1]),
        total_allowance=int(row[2]),
        exhausted_givers=int(row[3]),
    )
