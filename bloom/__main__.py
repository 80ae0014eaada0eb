"""
bloom.__main__ — Entry point for ``python -m bloom``
====================================================

The external daily trigger.

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml (tunables; defaults when the file is absent).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Run the daily job: start, rank yesterday, complete, drain the outbox.

Run with::

    python -m bloom                # today
    python -m bloom 2025-03-14     # a specific day
"""

from __future__ import annotations

import logging
import sys
from datetime import date

from dotenv import load_dotenv

from bloom.config import BloomConfig, load_config
from bloom.database.engine import create_db_engine, init_db
from bloom.services.daily_jobs import run_daily
from bloom.services.outbox_service import OutboxDispatcher

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("bloom")


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run the daily job once."""
    argv = sys.argv[1:] if argv is None else argv

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    try:
        cfg = load_config()
    except FileNotFoundError:
        logger.warning("config.yaml not found, using defaults")
        cfg = BloomConfig()
    logger.info("Config loaded — Club: %s", cfg.community_name)

    try:
        day = date.fromisoformat(argv[0]) if argv else date.today()
    except ValueError:
        logger.critical("Invalid date %r, expected YYYY-MM-DD", argv[0])
        return 2

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        return 1
    init_db(engine)

    # 4. Daily job.
    dispatcher = OutboxDispatcher(
        engine,
        batch_size=cfg.outbox_batch_size,
        max_attempts=cfg.outbox_max_attempts,
    )
    report = run_daily(engine, today=day, config=cfg, dispatcher=dispatcher)
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
