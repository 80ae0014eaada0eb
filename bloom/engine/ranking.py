"""
bloom.engine.ranking — Leaderboard Aggregation
===============================================

Pure aggregation of reward rows into an ordered leaderboard.  No DB I/O:
the ranking service loads the rows and persists the result.

Ordering:
  1. total amount received, descending
  2. earliest last-received timestamp first (a recipient who reached the
     total sooner ranks higher)
  3. recipient id, ascending (final deterministic fallback)

Ranks are consecutive positions ``1..n`` after ordering, so every
recipient has a distinct rank.  Tied totals are not shared: the
tie-breakers above decide which of them takes the higher position.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class RewardRow:
    """The slice of a reward row the leaderboard needs."""

    recipient_id: int
    giver_id: int
    amount: int
    created_at: datetime


@dataclass(frozen=True, slots=True)
class RankEntry:
    user_id: int
    total_amount: int
    rank: int
    reward_count: int
    last_received_at: datetime

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "total_amount": self.total_amount,
            "rank": self.rank,
            "reward_count": self.reward_count,
            "last_received_at": self.last_received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> RankEntry:
        return cls(
            user_id=int(raw["user_id"]),
            total_amount=int(raw["total_amount"]),
            rank=int(raw["rank"]),
            reward_count=int(raw["reward_count"]),
            last_received_at=datetime.fromisoformat(raw["last_received_at"]),
        )


@dataclass(frozen=True, slots=True)
class RankingSummary:
    total_amount: int
    recipient_count: int
    giver_count: int


def rank_recipients(rows: Iterable[RewardRow]) -> list[RankEntry]:
    """Group *rows* by recipient, sum amounts and order the leaderboard."""
    totals: dict[int, int] = {}
    counts: dict[int, int] = {}
    last_seen: dict[int, datetime] = {}

    for row in rows:
        totals[row.recipient_id] = totals.get(row.recipient_id, 0) + row.amount
        counts[row.recipient_id] = counts.get(row.recipient_id, 0) + 1
        previous = last_seen.get(row.recipient_id)
        if previous is None or row.created_at > previous:
            last_seen[row.recipient_id] = row.created_at

    ordered = sorted(
        totals,
        key=lambda user_id: (-totals[user_id], last_seen[user_id], user_id),
    )
    return [
        RankEntry(
            user_id=user_id,
            total_amount=totals[user_id],
            rank=position,
            reward_count=counts[user_id],
            last_received_at=last_seen[user_id],
        )
        for position, user_id in enumerate(ordered, start=1)
    ]


def summarize(rows: Iterable[RewardRow]) -> RankingSummary:
    rows = list(rows)
    return RankingSummary(
        total_amount=sum(row.amount for row in rows),
        recipient_count=len({row.recipient_id for row in rows}),
        giver_count=len({row.giver_id for row in rows}),
    )
