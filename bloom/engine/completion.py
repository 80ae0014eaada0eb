"""
bloom.engine.completion — Completion Rate & Latch
==================================================

rate = days with a check-in / required reading days × 100, rounded to two
decimals.  An enrollment flips ``enrolled → completed`` the first time the
rate reaches the event's threshold and never flips back.
"""

from __future__ import annotations

from bloom.database.models import EnrollmentStatus


def completion_rate(days_with_check_in: int, required_days: int) -> float:
    if required_days <= 0:
        return 0.0
    rate = days_with_check_in / required_days * 100
    return round(min(rate, 100.0), 2)


def should_latch_completed(status: str, rate: float, threshold: float) -> bool:
    """True only for an ``enrolled`` enrollment whose rate reached *threshold*."""
    return status == EnrollmentStatus.ENROLLED and rate >= threshold
