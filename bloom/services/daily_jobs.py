"""
bloom.services.daily_jobs — Once-a-Day Trigger
===============================================

Run once per day (cron, ``python -m bloom``):

1. start every enrolling event whose guard now holds
2. generate yesterday's leaderboard of every running event
3. complete every running event whose end date has passed
4. drain the outbox

Each step runs its own transactions; a failure in one event is logged and
the job moves on to the next.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import Engine, select

from bloom.config import BloomConfig
from bloom.database.engine import get_session
from bloom.database.models import Event, EventStatus
from bloom.engine.calendar import is_activity_day
from bloom.services import lifecycle_service, ranking_service
from bloom.services.outbox_service import DrainReport, OutboxDispatcher

logger = logging.getLogger(__name__)


@dataclass
class DailyJobReport:
    day: date
    started: list[int] = field(default_factory=list)
    ranked: list[int] = field(default_factory=list)
    completed: list[int] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    outbox: DrainReport | None = None


def _events_in(engine: Engine, status: EventStatus) -> list[Event]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(Event).where(Event.status == status).order_by(Event.id)
        ).all())


def run_daily(
    engine: Engine,
    *,
    today: date | None = None,
    config: BloomConfig | None = None,
    dispatcher: OutboxDispatcher | None = None,
) -> DailyJobReport:
    cfg = config or BloomConfig()
    today = today or date.today()
    now = datetime.now()
    report = DailyJobReport(day=today)

    for event in _events_in(engine, EventStatus.ENROLLING):
        result = lifecycle_service.start(engine, event_id=event.id, today=today, now=now)
        if not result.ok:
            report.failures[event.id] = result.error.message
        elif result.value:
            report.started.append(event.id)

    yesterday = today - timedelta(days=1)
    for event in _events_in(engine, EventStatus.IN_PROGRESS):
        if not is_activity_day(event, yesterday):
            continue
        result = ranking_service.daily_ranking(
            engine, event_id=event.id, ranking_date=yesterday, now=now
        )
        if result.ok:
            report.ranked.append(event.id)
        else:
            report.failures[event.id] = result.error.message

    for event in _events_in(engine, EventStatus.IN_PROGRESS):
        if today <= event.end_date:
            continue
        result = lifecycle_service.complete(
            engine,
            event_id=event.id,
            today=today,
            now=now,
            window_days=cfg.leader_window_days,
            top_n=cfg.certificate_top_n,
            validity_years=cfg.certificate_validity_years,
        )
        if result.ok:
            report.completed.append(event.id)
        else:
            report.failures[event.id] = result.error.message

    for event_id, message in report.failures.items():
        logger.warning("Daily job: event %d skipped: %s", event_id, message)

    if dispatcher is not None:
        report.outbox = dispatcher.drain()

    logger.info("Daily job %s: %d started, %d ranked, %d completed",
                today, len(report.started), len(report.ranked), len(report.completed))
    return report
