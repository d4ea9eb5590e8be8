"""Sequential unlock gating.

A module is one of four states for a student:

  locked       previous module in the course not completed yet
  available    unlocked, no progress
  in_progress  unlocked, progress > 0
  completed    completed_at recorded (terminal)

Module 0, and any module with requires_previous=False, is always
unlocked.  Otherwise the published module at order_index - 1 must be
completed.  When no such module exists (a gap in the published
sequence) the module is unlocked.

Everything here is pure: no I/O, safe to call from any request.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Mapping
from uuid import UUID

from app.core.errors import InvalidState
from app.core.metrics import SEQUENCE_INTEGRITY_ERRORS
from app.models.module import Module
from app.models.progress import ModuleStatus, ModuleUnlockInfo

logger = logging.getLogger(__name__)


def _unlocked(progress: int) -> ModuleUnlockInfo:
    status = ModuleStatus.IN_PROGRESS if progress > 0 else ModuleStatus.AVAILABLE
    return ModuleUnlockInfo(is_unlocked=True, status=status, progress=progress)


def evaluate_unlock(
    module: Module,
    progress_percent: int,
    is_completed: bool,
    previous_module: Module | None,
    is_previous_completed: bool,
) -> ModuleUnlockInfo:
    """Decide the state of one module for one student.

    previous_module is the published module at order_index - 1 in the
    same course, or None when there is none.
    """
    if not module.is_published:
        return ModuleUnlockInfo(
            is_unlocked=False,
            status=ModuleStatus.LOCKED,
            progress=0,
            unlock_message="Module is not published",
        )

    if is_completed:
        return ModuleUnlockInfo(
            is_unlocked=True, status=ModuleStatus.COMPLETED, progress=100
        )

    progress = min(max(progress_percent, 0), 100)

    if module.order_index == 0 or not module.requires_previous:
        return _unlocked(progress)

    if previous_module is None:
        return _unlocked(progress)

    if (
        previous_module.course_id != module.course_id
        or previous_module.order_index != module.order_index - 1
    ):
        raise InvalidState(
            f"module {previous_module.id} is not the predecessor of {module.id}"
        )

    if is_previous_completed:
        return _unlocked(progress)

    return ModuleUnlockInfo(
        is_unlocked=False,
        status=ModuleStatus.LOCKED,
        progress=0,
        unlock_message=f'Complete "{previous_module.title}" to unlock',
        prerequisite_module_id=previous_module.id,
        prerequisite_module_title=previous_module.title,
    )


def _index_published(modules: Iterable[Module]) -> dict[int, list[Module]]:
    by_index: dict[int, list[Module]] = {}
    for module in modules:
        if module.is_published:
            by_index.setdefault(module.order_index, []).append(module)
    return by_index


def predecessor_of(
    module: Module, by_index: Mapping[int, list[Module]]
) -> tuple[Module | None, bool]:
    """Return (previous module, ambiguous).

    ambiguous is True when several published modules share the previous
    order_index; the previous module is then reported as None.
    """
    candidates = by_index.get(module.order_index - 1, [])
    if len(candidates) == 1:
        return candidates[0], False
    return None, len(candidates) > 1


def evaluate_unlock_for_course(
    modules: Iterable[Module],
    progress_by_module: Mapping[UUID, int],
    completed_ids: Collection[UUID],
) -> dict[UUID, ModuleUnlockInfo]:
    """Evaluate every published module of one course for one student.

    Modules are visited in ascending order_index and each decision reads
    the already-computed result of its predecessor, never the raw
    completion flag, so a stale or inconsistent row cannot unlock a
    module whose predecessor is itself locked.

    Duplicate order_index values are a data-integrity problem upstream:
    the successor of a duplicated slot has no single predecessor, so it
    is evaluated as unlocked and the condition is logged.
    """
    published = [m for m in modules if m.is_published]
    course_ids = {m.course_id for m in published}
    if len(course_ids) > 1:
        raise InvalidState("modules from more than one course")

    ordered = sorted(published, key=lambda m: m.order_index)
    by_index = _index_published(ordered)

    duplicated = sorted(i for i, group in by_index.items() if len(group) > 1)
    if duplicated:
        SEQUENCE_INTEGRITY_ERRORS.inc()
        logger.warning(
            "Duplicate module order_index values course=%s indexes=%s",
            next(iter(course_ids)),
            duplicated,
        )

    results: dict[UUID, ModuleUnlockInfo] = {}
    for module in ordered:
        previous, ambiguous = predecessor_of(module, by_index)
        if ambiguous and module.requires_previous and module.id not in completed_ids:
            logger.warning(
                "Ambiguous predecessor for module=%s order_index=%d; unlocking",
                module.id,
                module.order_index,
            )
        previous_done = (
            previous is not None
            and results[previous.id].status is ModuleStatus.COMPLETED
        )
        results[module.id] = evaluate_unlock(
            module,
            progress_by_module.get(module.id, 0),
            module.id in completed_ids,
            previous,
            previous_done,
        )
    return results


def newly_unlocked_successor(
    completed_module: Module,
    course_modules: Iterable[Module],
    progress_by_module: Mapping[UUID, int],
    completed_ids: Collection[UUID],
) -> Module | None:
    """The next module that was locked only because completed_module was not done.

    Evaluates each published module at order_index + 1 twice, with the
    predecessor incomplete and complete, and returns one that flips from
    locked to unlocked.  When a duplicated order_index puts several
    modules in that slot, all of them unlock together; the first by id
    is returned and the rest are logged.
    """
    by_index = _index_published(course_modules)
    flipped: list[Module] = []
    for successor in by_index.get(completed_module.order_index + 1, []):
        if successor.course_id != completed_module.course_id:
            continue
        previous, _ = predecessor_of(successor, by_index)
        if previous is None or previous.id != completed_module.id:
            continue

        progress = progress_by_module.get(successor.id, 0)
        is_completed = successor.id in completed_ids
        before = evaluate_unlock(successor, progress, is_completed, previous, False)
        after = evaluate_unlock(successor, progress, is_completed, previous, True)
        if not before.is_unlocked and after.is_unlocked:
            flipped.append(successor)

    if not flipped:
        return None
    flipped.sort(key=lambda m: str(m.id))
    if len(flipped) > 1:
        logger.warning(
            "Completing module=%s unlocked %d modules at order_index=%d; "
            "reporting module=%s",
            completed_module.id,
            len(flipped),
            completed_module.order_index + 1,
            flipped[0].id,
        )
    return flipped[0]
