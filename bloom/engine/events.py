"""
bloom.engine.events — Outbox Topics & Envelope
===============================================

The universal envelope for everything the core announces to its
collaborators (notifications, analytics, payments).  Envelopes are
written to ``outbox_events`` inside the mutating transaction and
delivered after commit by :class:`bloom.services.outbox_service.OutboxDispatcher`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

__all__ = ["Topic", "DomainEvent"]


class Topic:
    """Outbox topic string constants."""
    EVENT_SUBMITTED = "event.submitted"
    EVENT_APPROVED = "event.approved"
    EVENT_REJECTED = "event.rejected"
    EVENT_STARTED = "event.started"
    EVENT_COMPLETED = "event.completed"
    ENROLLMENT_CREATED = "enrollment.created"
    ENROLLMENT_CANCELLED = "enrollment.cancelled"
    ENROLLMENT_COMPLETED = "enrollment.completed"
    REWARD_GIVEN = "reward.given"
    RANKING_GENERATED = "ranking.generated"
    CERTIFICATE_ISSUED = "certificate.issued"
    CERTIFICATE_REGENERATED = "certificate.regenerated"


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """A delivered outbox row as seen by subscribers.

    ``payload`` always carries the ids of the entities involved; the
    envelope adds the outbox id and the time the mutation committed.
    """

    id: int
    topic: str
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.now)
