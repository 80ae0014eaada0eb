"""
bloom.services.outbox_service — Transactional Outbox & Dispatcher
==================================================================

Core operations never call collaborator code.  They append an
:class:`~bloom.database.models.OutboxEvent` in the same transaction as
their mutation via :func:`publish`; the row only becomes visible when
that transaction commits.

:class:`OutboxDispatcher` drains committed rows in id order and hands
each one to the subscribed handlers.  A failing handler is logged, the
row keeps ``attempts``/``last_error`` and is retried on the next drain
until ``max_attempts`` is reached.  Handler failures never reach the
core transaction, which has already committed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session, run_db
from bloom.database.models import OutboxEvent
from bloom.engine.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Any]

# Subscribing to this topic receives every event.
ALL_TOPICS = "*"


def publish(
    session: Session,
    topic: str,
    payload: dict[str, Any],
    *,
    now: datetime | None = None,
) -> OutboxEvent:
    """Append an outbox row inside the caller's open transaction.

    *payload* must be JSON-serializable (ids, strings, numbers).
    """
    row = OutboxEvent(topic=topic, payload=payload, created_at=now or datetime.now())
    session.add(row)
    return row


@dataclass
class DrainReport:
    delivered: int = 0
    failed: int = 0


class OutboxDispatcher:
    """Delivers committed outbox rows to in-process subscribers.

    Usage::

        dispatcher = OutboxDispatcher(engine)
        dispatcher.subscribe("reward.given", notify_recipient)
        dispatcher.drain()                 # from a job, or
        await dispatcher.run_forever(5.0)  # from an event loop
    """

    def __init__(
        self,
        engine: Engine,
        *,
        batch_size: int = constants.OUTBOX_BATCH_SIZE,
        max_attempts: int = constants.OUTBOX_MAX_ATTEMPTS,
    ) -> None:
        self.engine = engine
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._task: asyncio.Task | None = None

    # -- subscriptions -----------------------------------------------------
    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)
        logger.debug("Subscribed %r to %s", handler, topic)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        if handler in self._handlers.get(topic, []):
            self._handlers[topic].remove(handler)

    def handlers_for(self, topic: str) -> list[Handler]:
        return [*self._handlers.get(topic, []), *self._handlers.get(ALL_TOPICS, [])]

    # -- delivery ----------------------------------------------------------
    def _fetch_pending(self) -> list[DomainEvent]:
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(OutboxEvent)
                .where(
                    OutboxEvent.delivered_at.is_(None),
                    OutboxEvent.attempts < self.max_attempts,
                )
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            ).all()
            return [
                DomainEvent(
                    id=row.id,
                    topic=row.topic,
                    payload=dict(row.payload or {}),
                    occurred_at=row.created_at,
                )
                for row in rows
            ]

    def _mark(self, event_id: int, error: str | None) -> None:
        with get_session(self.engine) as session:
            row = session.get(OutboxEvent, event_id)
            if row is None:
                return
            row.attempts += 1
            if error is None:
                row.delivered_at = datetime.now()
                row.last_error = None
            else:
                row.last_error = error[:1000]
                if row.attempts >= self.max_attempts:
                    logger.error(
                        "Outbox event %d (%s) dropped after %d attempts",
                        row.id, row.topic, row.attempts,
                    )

    def drain(self) -> DrainReport:
        """Deliver one batch of pending events.  Never raises for handler errors."""
        report = DrainReport()
        for event in self._fetch_pending():
            error: str | None = None
            for handler in self.handlers_for(event.topic):
                try:
                    handler(event)
                except Exception as exc:
                    logger.exception(
                        "Outbox handler %r failed for event %d (%s)",
                        handler, event.id, event.topic,
                    )
                    error = f"{type(exc).__name__}: {exc}"
            self._mark(event.id, error)
            if error is None:
                report.delivered += 1
            else:
                report.failed += 1

        if report.delivered or report.failed:
            logger.info(
                "Outbox drained: %d delivered, %d failed", report.delivered, report.failed
            )
        return report

    # -- background loop ---------------------------------------------------
    async def run_forever(self, interval: float = 5.0) -> None:
        """Drain on a fixed interval until cancelled."""
        while True:
            try:
                await run_db(self.drain)
            except Exception:
                logger.exception("Outbox drain error")
            await asyncio.sleep(interval)

    def start(self, loop: asyncio.AbstractEventLoop, interval: float = 5.0) -> None:
        """Start the background drain task."""
        if self._task is not None:
            return
        self._task = loop.create_task(self.run_forever(interval), name="outbox-drain")

    def stop(self) -> None:
        """Cancel the drain task."""
        if self._task:
            self._task.cancel()
            self._task = None
