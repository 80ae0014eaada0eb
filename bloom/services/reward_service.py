"""
bloom.services.reward_service — Giving Flowers
===============================================

Two-phase flow shared by every caller:

* ``confirmed=False`` → :class:`RewardPreview` (quota info + irrevocability
  warning), nothing is written.
* ``confirmed=True`` → one atomic transaction:

  1. consume the giver's quota (conditional UPDATE, aborts on shortfall)
  2. insert the immutable :class:`~bloom.database.models.Reward`
  3. bump the recipient's enrollment aggregates
  4. bump the giver's ``rewards_given_count`` and ``give_count_today``
  5. append a ``reward.given`` outbox row, delivered after commit

A failure at any step rolls back the whole unit, so quota spent always
equals the sum of rewards created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session, retry_transient
from bloom.database.models import CheckIn, Enrollment, Event, Quota, Reward
from bloom.engine.events import Topic
from bloom.errors import (
    AuthorizationError,
    BloomError,
    InvalidTargetError,
    NotFoundError,
    SelfTargetNotAllowedError,
    ServiceResult,
    ValidationError,
)
from bloom.services.outbox_service import publish
from bloom.services.quota_service import (
    QuotaInfo,
    consume_from,
    ensure_rewardable,
    get_or_create_quota,
    quota_info_from,
    quota_query,
    shared_event_query,
)

logger = logging.getLogger(__name__)

IRREVOCABLE_WARNING = "Flowers cannot be taken back once given."


@dataclass(frozen=True, slots=True)
class RewardPreview:
    giver_id: int
    recipient_id: int
    check_in_id: int
    amount: int
    quota: QuotaInfo
    warning: str = IRREVOCABLE_WARNING

    @property
    def can_give(self) -> bool:
        return self.quota.remaining >= self.amount


@dataclass(frozen=True, slots=True)
class GiveReceipt:
    reward: Reward
    used: int
    max_allowance: int

    @property
    def remaining(self) -> int:
        return self.max_allowance - self.used


@dataclass
class _GiveContext:
    event: Event
    check_in: CheckIn
    giver_enrollment: Enrollment
    recipient_enrollment: Enrollment


def _active_enrollment(session: Session, event_id: int, user_id: int) -> Enrollment | None:
    enrollment = session.scalar(
        select(Enrollment).where(Enrollment.event_id == event_id, Enrollment.user_id == user_id)
    )
    if enrollment is None or not enrollment.is_active:
        return None
    return enrollment


def _load_context(
    session: Session,
    *,
    event_id: int,
    giver_id: int,
    recipient_id: int,
    check_in_id: int,
    amount: int,
    now: datetime,
    lock: bool = False,
) -> _GiveContext:
    """Validate every precondition of a give; raises the matching BloomError.

    With *lock* the event row is read FOR SHARE (see
    :func:`~bloom.services.quota_service.shared_event_query`).
    """
    if amount < 1:
        raise ValidationError("Amount must be at least 1")
    if giver_id == recipient_id:
        raise SelfTargetNotAllowedError()

    if lock:
        event = session.scalar(shared_event_query(event_id))
    else:
        event = session.get(Event, event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")

    check_in = session.get(CheckIn, check_in_id)
    if check_in is None:
        raise InvalidTargetError(f"Check-in {check_in_id} not found")
    if check_in.event_id != event_id:
        raise InvalidTargetError("Check-in belongs to a different event")
    if check_in.user_id != recipient_id:
        raise InvalidTargetError("Check-in was not written by the recipient")

    ensure_rewardable(event, now.date())

    giver_enrollment = _active_enrollment(session, event_id, giver_id)
    if giver_enrollment is None:
        raise AuthorizationError("Only enrolled members can give flowers")
    recipient_enrollment = _active_enrollment(session, event_id, recipient_id)
    if recipient_enrollment is None:
        raise InvalidTargetError("Recipient is not enrolled in this event")

    return _GiveContext(event, check_in, giver_enrollment, recipient_enrollment)


def _preview(
    engine: Engine,
    *,
    event_id: int,
    giver_id: int,
    recipient_id: int,
    check_in_id: int,
    amount: int,
    now: datetime,
    max_allowance: int,
) -> RewardPreview:
    with Session(engine) as session:
        ctx = _load_context(
            session, event_id=event_id, giver_id=giver_id, recipient_id=recipient_id,
            check_in_id=check_in_id, amount=amount, now=now,
        )
        today = now.date()
        quota = session.scalar(quota_query(giver_id, event_id, today))
        info = quota_info_from(ctx.event, quota, giver_id, today, max_allowance)
    return RewardPreview(
        giver_id=giver_id,
        recipient_id=recipient_id,
        check_in_id=check_in_id,
        amount=amount,
        quota=info,
    )


def _execute(
    engine: Engine,
    *,
    event_id: int,
    giver_id: int,
    recipient_id: int,
    check_in_id: int,
    amount: int,
    comment: str | None,
    anonymous: bool,
    now: datetime,
    max_allowance: int,
) -> GiveReceipt:
    with get_session(engine) as session:
        ctx = _load_context(
            session, event_id=event_id, giver_id=giver_id, recipient_id=recipient_id,
            check_in_id=check_in_id, amount=amount, now=now, lock=True,
        )

        # 1. Quota (aborts the transaction on shortfall)
        quota = get_or_create_quota(
            session, giver_id, event_id, now.date(), max_allowance=max_allowance, lock=True
        )
        consume_from(session, quota, amount)
        session.execute(
            update(Quota)
            .where(Quota.id == quota.id)
            .values(give_count_today=Quota.give_count_today + 1, last_given_at=now)
            .execution_options(synchronize_session=False)
        )

        # 2. Reward
        reward = Reward(
            event_id=event_id,
            giver_id=giver_id,
            recipient_id=recipient_id,
            check_in_id=ctx.check_in.id,
            amount=amount,
            comment=comment,
            anonymous=anonymous,
            created_at=now,
        )
        session.add(reward)
        session.flush()

        # 3–4. Enrollment aggregates
        session.execute(
            update(Enrollment)
            .where(Enrollment.id == ctx.recipient_enrollment.id)
            .values(
                rewards_received_count=Enrollment.rewards_received_count + 1,
                rewards_received_amount=Enrollment.rewards_received_amount + amount,
            )
            .execution_options(synchronize_session=False)
        )
        session.execute(
            update(Enrollment)
            .where(Enrollment.id == ctx.giver_enrollment.id)
            .values(rewards_given_count=Enrollment.rewards_given_count + 1)
            .execution_options(synchronize_session=False)
        )

        # 5. Announce after commit
        publish(session, Topic.REWARD_GIVEN, {
            "reward_id": reward.id,
            "event_id": event_id,
            "giver_id": None if anonymous else giver_id,
            "recipient_id": recipient_id,
            "check_in_id": ctx.check_in.id,
            "amount": amount,
            "anonymous": anonymous,
            "given_at": now.isoformat(),
        }, now=now)

        session.refresh(quota)
        receipt = GiveReceipt(reward=reward, used=quota.used, max_allowance=quota.max_allowance)

    logger.info("Flowers: %d → %d ×%d on event %d (quota %d/%d)",
                giver_id, recipient_id, amount, event_id,
                receipt.used, receipt.max_allowance)
    return receipt


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def give(
    engine: Engine,
    *,
    event_id: int,
    giver_id: int,
    recipient_id: int,
    check_in_id: int,
    amount: int = 1,
    comment: str | None = None,
    anonymous: bool = False,
    confirmed: bool = False,
    now: datetime | None = None,
    max_allowance: int = constants.DEFAULT_DAILY_ALLOWANCE,
    retry_attempts: int = constants.CONSUME_RETRY_ATTEMPTS,
) -> ServiceResult[RewardPreview | GiveReceipt]:
    """Give *amount* flowers from *giver_id* to the author of *check_in_id*.

    Returns a :class:`RewardPreview` while ``confirmed`` is false and a
    :class:`GiveReceipt` once the flowers have been given.  Possible
    failures: ``InsufficientQuotaError``, ``InvalidTargetError``,
    ``SelfTargetNotAllowedError``, ``EventNotActiveError``,
    ``AuthorizationError``, ``NotFoundError``,
    ``ConcurrencyConflictError``.
    """
    now = now or datetime.now()
    kwargs = dict(
        event_id=event_id,
        giver_id=giver_id,
        recipient_id=recipient_id,
        check_in_id=check_in_id,
        amount=amount,
        now=now,
        max_allowance=max_allowance,
    )
    try:
        if not confirmed:
            return ServiceResult.success(_preview(engine, **kwargs))
        receipt = retry_transient(
            lambda: _execute(engine, comment=comment, anonymous=anonymous, **kwargs),
            attempts=retry_attempts,
            label="give flowers",
        )
        return ServiceResult.success(receipt)
    except BloomError as exc:
        logger.info("Give rejected (%s): giver=%d recipient=%d event=%d: %s",
                    exc.code, giver_id, recipient_id, event_id, exc.message)
        return ServiceResult.failure(exc)


def rewards_for_check_in(engine: Engine, check_in_id: int) -> list[Reward]:
    """Every reward attached to a check-in, oldest first."""
    with Session(engine) as session:
        return list(session.scalars(
            select(Reward).where(Reward.check_in_id == check_in_id).order_by(Reward.created_at, Reward.id)
        ).all())
