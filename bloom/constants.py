"""
bloom.constants — Shared Constants & Helpers
=============================================

Single source of truth for the core's defaults and the certificate
presentation helpers.  Import from here instead of duplicating numbers in
services and tests.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Flowers
# ---------------------------------------------------------------------------
DEFAULT_DAILY_ALLOWANCE = 3
CONSUME_RETRY_ATTEMPTS = 3
QUOTA_WARNING_RATIO = 0.8  # share of the allowance used before a giver is warned
QUOTA_HISTORY_DAYS = 7

# ---------------------------------------------------------------------------
# Daily leaders
# ---------------------------------------------------------------------------
MAX_LEADER_CLAIMS = 3
AUTO_ASSIGN_THRESHOLD = 3
LEADER_WINDOW_DAYS = 3  # trailing days (schedule date included) a daily leader stays "current"

# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------
SERVICE_FEE_RATIO = 0.2
DEPOSIT_RATIO = 0.8

# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------
CERTIFICATE_TOP_N = 3
CERTIFICATE_VALIDITY_YEARS = 1

RANK_BADGES: list[str] = ["\U0001f947", "\U0001f948", "\U0001f949"]  # 🥇🥈🥉

HONOR_LEVELS: dict[int, str] = {
    1: "gold",
    2: "silver",
    3: "bronze",
}

# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------
OUTBOX_BATCH_SIZE = 100
OUTBOX_MAX_ATTEMPTS = 5


def honor_level(rank: int) -> str:
    """Honor level printed on a certificate of *rank*."""
    return HONOR_LEVELS.get(rank, "participant")


def rank_display(rank: int) -> str:
    """Badge + ordinal label, e.g. ``"🥇 #1"``."""
    if 1 <= rank <= len(RANK_BADGES):
        return f"{RANK_BADGES[rank - 1]} #{rank}"
    return f"#{rank}"
