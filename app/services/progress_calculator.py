"""Module completion percentage.

A module is worth 100 points: 50 for content viewed, 50 for assignments
submitted.  An axis with nothing on it (no published content, or no
published assignments) is worth its full 50, so a content-only or
assignment-only module can still reach 100.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from app.models.progress import ModuleUnlockInfo

_HALF = 50


def _half(done: int, total: int) -> float:
    if total <= 0:
        return float(_HALF)
    done = min(max(done, 0), total)
    return done / total * _HALF


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def calculate_progress(
    content_viewed_count: int,
    content_total: int,
    submitted_count: int,
    assignment_total: int,
) -> int:
    """Return the 0-100 completion percentage for one student in one module.

    >>> calculate_progress(2, 4, 1, 2)
    50
    >>> calculate_progress(0, 0, 0, 0)
    100
    """
    raw = _half(content_viewed_count, content_total) + _half(
        submitted_count, assignment_total
    )
    return min(max(_round_half_up(raw), 0), 100)


def course_progress(infos: Iterable[ModuleUnlockInfo]) -> int:
    """Mean progress over the unlocked modules of a course, 0 if none are unlocked."""
    unlocked = [info.progress for info in infos if info.is_unlocked]
    if not unlocked:
        return 0
    return _round_half_up(sum(unlocked) / len(unlocked))
