from __future__ import annotations

import pytest

from app.models.progress import ModuleStatus, ModuleUnlockInfo
from app.services.progress_calculator import calculate_progress, course_progress


@pytest.mark.parametrize(
    ("viewed", "content_total", "submitted", "assignment_total", "expected"),
    [
        (2, 4, 1, 2, 50),
        (4, 4, 2, 2, 100),
        (0, 4, 0, 2, 0),
        (3, 3, 0, 0, 100),  # no assignments: that half is free
        (0, 0, 1, 1, 100),  # no content: that half is free
        (0, 0, 0, 0, 100),
        (1, 3, 0, 0, 67),  # 16.67 + 50
        (0, 0, 0, 3, 50),
    ],
)
def test_calculate_progress(
    viewed: int, content_total: int, submitted: int, assignment_total: int, expected: int
) -> None:
    assert calculate_progress(viewed, content_total, submitted, assignment_total) == expected


def test_calculate_progress_rounds_half_up() -> None:
    # 1/8 * 50 = 6.25, 1/2 * 50 = 25 -> 31.25 rounds down
    assert calculate_progress(1, 8, 1, 2) == 31
    # 1/4 * 50 = 12.5 rounds up (banker's rounding would give 12)
    assert calculate_progress(1, 4, 0, 1) == 13


def test_calculate_progress_clamps_counts_above_totals() -> None:
    # Content deleted after it was viewed must not push the module past 100
    # or let extra views stand in for missing submissions.
    assert calculate_progress(10, 2, 0, 2) == 50
    assert calculate_progress(10, 2, 5, 2) == 100


def test_calculate_progress_ignores_negative_counts() -> None:
    assert calculate_progress(-1, 4, -3, 2) == 0


def test_calculate_progress_is_monotonic_in_views() -> None:
    values = [calculate_progress(n, 7, 1, 3) for n in range(8)]
    assert values == sorted(values)


def _info(progress: int, unlocked: bool = True) -> ModuleUnlockInfo:
    status = ModuleStatus.IN_PROGRESS if unlocked else ModuleStatus.LOCKED
    return ModuleUnlockInfo(is_unlocked=unlocked, status=status, progress=progress)


def test_course_progress_averages_unlocked_modules_only() -> None:
    infos = [_info(100), _info(50), _info(0, unlocked=False)]
    assert course_progress(infos) == 75


def test_course_progress_is_zero_without_unlocked_modules() -> None:
    assert course_progress([]) == 0
    assert course_progress([_info(0, unlocked=False)]) == 0


def test_course_progress_rounds_half_up() -> None:
    assert course_progress([_info(0), _info(1)]) == 1
