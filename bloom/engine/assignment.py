"""
bloom.engine.assignment — Daily Leader Round-Robin
===================================================
"""

from __future__ import annotations

from collections.abc import Sequence


def round_robin(schedule_ids: Sequence[int], participant_ids: Sequence[int]) -> dict[int, int]:
    """Map each schedule to ``participants[i mod len(participants)]``.

    *schedule_ids* must already be ordered by day number and
    *participant_ids* by enrollment order; the result is deterministic for
    a given pair of inputs.  No participants → no assignments.
    """
    if not participant_ids:
        return {}
    return {
        schedule_id: participant_ids[index % len(participant_ids)]
        for index, schedule_id in enumerate(schedule_ids)
    }
