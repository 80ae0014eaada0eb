"""
tests/test_reward_service.py — Giving Flowers
==============================================

Covers the two-phase give (preview, then atomic commit), every
precondition failure, and quota conservation under concurrent gives.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from bloom.database.engine import get_session
from bloom.database.models import Enrollment, OutboxEvent, Quota, Reward
from bloom.engine.events import Topic
from bloom.errors import (
    AuthorizationError,
    EventNotActiveError,
    InsufficientQuotaError,
    InvalidTargetError,
    SelfTargetNotAllowedError,
)
from bloom.services import lifecycle_service, reward_service
from bloom.services.quota_service import shared_event_query
from bloom.services.reward_service import GiveReceipt, RewardPreview
from factories import D0, EventFactory, at, day


def _give(running, giver, recipient, check_in_id, *, amount=1, confirmed=True, when=None, **kw):
    return reward_service.give(
        running.engine,
        event_id=running.event_id,
        giver_id=giver,
        recipient_id=recipient,
        check_in_id=check_in_id,
        amount=amount,
        confirmed=confirmed,
        now=when or at(D0, 10),
        **kw,
    )


def _count(engine, model) -> int:
    with get_session(engine) as session:
        return session.scalar(select(func.count(model.id)))


def _quota_used(engine, user_id, event_id, quota_date) -> int:
    with get_session(engine) as session:
        return session.scalar(
            select(Quota.used).where(
                Quota.user_id == user_id, Quota.event_id == event_id, Quota.quota_date == quota_date
            )
        )


class TestPreview:
    def test_preview_writes_nothing(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)

        result = _give(running, giver, recipient, check_in_id, confirmed=False)
        preview = result.unwrap()
        assert isinstance(preview, RewardPreview)
        assert preview.can_give
        assert preview.quota.remaining == 3
        assert "cannot be taken back" in preview.warning
        assert _count(events.engine, Reward) == 0
        assert _count(events.engine, Quota) == 0

    def test_preview_reports_exhausted_quota(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        _give(running, giver, recipient, check_in_id, amount=3).unwrap()

        preview = _give(running, giver, recipient, check_in_id, confirmed=False).unwrap()
        assert not preview.can_give
        assert preview.quota.remaining == 0


class TestConfirmedGive:
    def test_give_updates_every_aggregate(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)

        receipt = _give(running, giver, recipient, check_in_id, amount=2,
                        comment="Lovely note").unwrap()
        assert isinstance(receipt, GiveReceipt)
        assert receipt.reward.amount == 2
        assert receipt.remaining == 1

        with get_session(events.engine) as session:
            quota = session.scalar(select(Quota).where(Quota.user_id == giver))
            assert (quota.used, quota.give_count_today) == (2, 1)
            assert quota.last_given_at == at(D0, 10)

            by_user = {
                e.user_id: e for e in session.scalars(
                    select(Enrollment).where(Enrollment.event_id == running.event_id)
                )
            }
            assert by_user[recipient].rewards_received_count == 1
            assert by_user[recipient].rewards_received_amount == 2
            assert by_user[giver].rewards_given_count == 1

            outbox = session.scalars(
                select(OutboxEvent).where(OutboxEvent.topic == Topic.REWARD_GIVEN)
            ).all()
            assert len(outbox) == 1
            assert outbox[0].payload["recipient_id"] == recipient
            assert outbox[0].delivered_at is None

    def test_anonymous_give_hides_giver_in_announcement(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        _give(running, giver, recipient, check_in_id, anonymous=True).unwrap()
        with get_session(events.engine) as session:
            payload = session.scalar(
                select(OutboxEvent.payload).where(OutboxEvent.topic == Topic.REWARD_GIVEN)
            )
        assert payload["giver_id"] is None
        assert payload["anonymous"] is True

    def test_fourth_flower_rejected_and_nothing_written(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        for _ in range(3):
            _give(running, giver, recipient, check_in_id).unwrap()

        result = _give(running, giver, recipient, check_in_id)
        assert isinstance(result.error, InsufficientQuotaError)
        assert result.error.used == 3
        assert _quota_used(events.engine, giver, running.event_id, D0) == 3
        assert _count(events.engine, Reward) == 3

    def test_quota_resets_next_day(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        _give(running, giver, recipient, check_in_id, amount=3).unwrap()
        assert _give(running, giver, recipient, check_in_id, when=at(day(1), 9)).ok


class TestPreconditions:
    def test_self_give_rejected(self, events):
        running = events.running(participants=1)
        reader = running.participant_ids[0]
        check_in_id = running.check_in(reader, D0)
        result = _give(running, reader, reader, check_in_id)
        assert isinstance(result.error, SelfTargetNotAllowedError)

    def test_check_in_must_belong_to_recipient(self, events):
        running = events.running(participants=3)
        giver, recipient, other = running.participant_ids
        check_in_id = running.check_in(other, D0)
        result = _give(running, giver, recipient, check_in_id)
        assert isinstance(result.error, InvalidTargetError)

    def test_check_in_must_belong_to_event(self, events):
        first = events.running(participants=2)
        second = events.running(participants=2)
        foreign_check_in = second.check_in(second.participant_ids[1], D0)
        result = _give(first, first.participant_ids[0], second.participant_ids[1], foreign_check_in)
        assert isinstance(result.error, InvalidTargetError)

    def test_outsider_cannot_give(self, events, make_user):
        running = events.running(participants=1)
        recipient = running.participant_ids[0]
        check_in_id = running.check_in(recipient, D0)
        result = _give(running, make_user("outsider"), recipient, check_in_id)
        assert isinstance(result.error, AuthorizationError)

    def test_rest_day_rejected(self, events):
        running = events.running(participants=2, weekend_rest=True, end_date=day(13))
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        result = _give(running, giver, recipient, check_in_id, when=at(day(5)))  # Saturday
        assert isinstance(result.error, EventNotActiveError)
        assert _count(events.engine, Quota) == 0


class TestConcurrency:
    def test_concurrent_gives_never_overspend(self, file_engine):
        factory = EventFactory(file_engine)
        running = factory.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)

        attempts = 12
        barrier = threading.Barrier(attempts)

        def attempt(_):
            barrier.wait()
            return _give(running, giver, recipient, check_in_id, retry_attempts=10)

        with ThreadPoolExecutor(max_workers=attempts) as pool:
            results = list(pool.map(attempt, range(attempts)))

        succeeded = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        assert len(succeeded) == 3
        assert all(isinstance(r.error, InsufficientQuotaError) for r in failed)

        with get_session(file_engine) as session:
            used = session.scalar(select(Quota.used).where(Quota.user_id == giver))
            given = session.scalar(
                select(func.coalesce(func.sum(Reward.amount), 0)).where(Reward.giver_id == giver)
            )
            rows = session.scalar(select(func.count(Quota.id)).where(Quota.user_id == giver))
        assert used == given == 3
        assert rows == 1


class TestCompletionOrdering:
    def test_confirmed_give_reads_event_for_share(self):
        sql = str(shared_event_query(7).compile(dialect=postgresql.dialect()))
        assert sql.rstrip().endswith("FOR SHARE")

    def test_give_after_completion_rejected(self, events):
        running = events.running(participants=2)
        giver, recipient = running.participant_ids
        check_in_id = running.check_in(recipient, D0)
        lifecycle_service.complete(
            events.engine, event_id=running.event_id, requester_id=running.leader_id,
            today=D0, now=at(D0, 9),
        ).unwrap()

        result = _give(running, giver, recipient, check_in_id, when=at(D0, 10))
        assert isinstance(result.error, EventNotActiveError)
        assert _count(events.engine, Reward) == 0
        assert _count(events.engine, Quota) == 0
