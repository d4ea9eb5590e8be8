"""Module progress tracking and unlock gating service.

Read path:  get_modules_unlock_info / get_course_overview fetch the
course's modules, progress rows, content and assignment counts and
submission counts in one pass, then run the pure ordered fold from
unlock_evaluator.

Write path: record_content_viewed adds the content id to the student's
progress row, recomputes the percentage and, on the first transition to
100%, stamps completed_at and reports the module that this unlocked.
The whole sequence holds the per-(student, module) lock and ends with
ProgressStore.commit().

Every operation first checks that the student is enrolled in the
course.

Collaborators are injected; nothing here reaches for a global.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from app.core.errors import ModuleLocked, NotEnrolled, NotFound, StoreUnavailable
from app.core.metrics import (
    CONTENT_VIEWS,
    MODULE_COMPLETIONS,
    MODULE_UNLOCKS,
    VIEW_TRACKING_FAILURES,
)
from app.models.module import ContentItem, Module, ModuleCounts
from app.models.progress import (
    CompletionResult,
    CourseOverview,
    ModuleDetail,
    ModuleOverview,
    ModuleProgress,
    ModuleProgressDetail,
    ModuleUnlockInfo,
    UnlockedModule,
    ViewedContent,
)
from app.repos.enrollment_roster import EnrollmentRoster
from app.repos.module_catalog import ModuleCatalog
from app.repos.progress_store import ProgressStore
from app.repos.submission_ledger import SubmissionLedger
from app.services.key_lock import KeyLock
from app.services.progress_calculator import calculate_progress, course_progress
from app.services.unlock_evaluator import (
    evaluate_unlock_for_course,
    newly_unlocked_successor,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


@dataclass(frozen=True, slots=True)
class _CourseSnapshot:
    modules: list[Module]
    counts: dict[UUID, ModuleCounts]
    rows: dict[UUID, ModuleProgress]
    progress: dict[UUID, int]
    completed: frozenset[UUID]

    def unlock_info(self) -> dict[UUID, ModuleUnlockInfo]:
        return evaluate_unlock_for_course(self.modules, self.progress, self.completed)


class ModuleProgressService:
    def __init__(
        self,
        *,
        catalog: ModuleCatalog,
        ledger: SubmissionLedger,
        store: ProgressStore,
        enrollments: EnrollmentRoster,
        key_lock: KeyLock,
        clock: Callable[[], datetime.datetime] = _utcnow,
        view_tracking_timeout_seconds: float = 2.0,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._store = store
        self._enrollments = enrollments
        self._lock = key_lock
        self._clock = clock
        self._view_tracking_timeout = view_tracking_timeout_seconds

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _published_module(
        self, module_id: UUID, course_id: UUID | None = None
    ) -> Module:
        module = await self._catalog.get_module(module_id)
        if module is None or not module.is_published:
            raise NotFound("Module not found")
        if course_id is not None and module.course_id != course_id:
            raise NotFound("Module not found")
        return module

    async def _published_content(
        self, module: Module, content_id: UUID
    ) -> ContentItem:
        content = await self._catalog.get_content(content_id)
        if (
            content is None
            or content.module_id != module.id
            or not content.is_published
        ):
            raise NotFound("Content not found in this module")
        return content

    async def _require_enrolled(self, course_id: UUID, student_id: UUID) -> None:
        if not await self._enrollments.is_enrolled(student_id, course_id):
            raise NotEnrolled()

    async def _course_snapshot(
        self, course_id: UUID, student_id: UUID
    ) -> _CourseSnapshot:
        modules = await self._catalog.list_published_modules(course_id)
        module_ids = [m.id for m in modules]
        counts = await self._catalog.get_counts(module_ids)
        rows = await self._store.get_many(student_id, module_ids)
        submitted = await self._ledger.count_submissions(student_id, module_ids)

        progress: dict[UUID, int] = {}
        for module in modules:
            c = counts.get(module.id, ModuleCounts())
            row = rows.get(module.id)
            progress[module.id] = calculate_progress(
                row.viewed_count if row else 0,
                c.content_total,
                submitted.get(module.id, 0),
                c.assignment_total,
            )

        completed = frozenset(mid for mid, row in rows.items() if row.is_completed)
        return _CourseSnapshot(modules, counts, rows, progress, completed)

    async def _require_unlocked(
        self, module: Module, student_id: UUID
    ) -> ModuleUnlockInfo:
        await self._require_enrolled(module.course_id, student_id)
        snapshot = await self._course_snapshot(module.course_id, student_id)
        info = snapshot.unlock_info().get(module.id)
        if info is None or not info.is_unlocked:
            message = info.unlock_message if info else None
            raise ModuleLocked(
                message or "Module is locked",
                prerequisite_module_id=(
                    str(info.prerequisite_module_id)
                    if info and info.prerequisite_module_id
                    else None
                ),
            )
        return info

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_modules_unlock_info(
        self, course_id: UUID, student_id: UUID
    ) -> dict[UUID, ModuleUnlockInfo]:
        """Unlock state of every published module in the course, keyed by module id."""
        await self._require_enrolled(course_id, student_id)
        snapshot = await self._course_snapshot(course_id, student_id)
        return snapshot.unlock_info()

    async def get_course_overview(
        self, course_id: UUID, student_id: UUID
    ) -> CourseOverview:
        await self._require_enrolled(course_id, student_id)
        snapshot = await self._course_snapshot(course_id, student_id)
        infos = snapshot.unlock_info()
        modules = [
            ModuleOverview(
                module=m,
                counts=snapshot.counts.get(m.id, ModuleCounts()),
                unlock=infos[m.id],
            )
            for m in snapshot.modules
        ]
        return CourseOverview(
            modules=modules,
            course_progress=course_progress(infos.values()),
        )

    async def get_module_unlock_info(
        self, course_id: UUID, module_id: UUID, student_id: UUID
    ) -> ModuleUnlockInfo:
        module = await self._published_module(module_id, course_id)
        infos = await self.get_modules_unlock_info(module.course_id, student_id)
        return infos[module.id]

    async def get_content(
        self, course_id: UUID, module_id: UUID, content_id: UUID, student_id: UUID
    ) -> ContentItem:
        """Return a content item, only if its module is unlocked for the student."""
        module = await self._published_module(module_id, course_id)
        await self._require_unlocked(module, student_id)
        return await self._published_content(module, content_id)

    async def get_module_progress(
        self, course_id: UUID, module_id: UUID, student_id: UUID
    ) -> ModuleProgressDetail:
        module = await self._published_module(module_id, course_id)
        await self._require_unlocked(module, student_id)

        row = await self._store.get_or_create(student_id, module.id)
        await self._store.commit()
        counts, submitted = await self._module_counts(module, student_id)
        percentage = calculate_progress(
            row.viewed_count, counts.content_total, submitted, counts.assignment_total
        )
        if row.is_completed:
            percentage = 100
        return ModuleProgressDetail(
            percentage=percentage,
            is_complete=row.is_completed or percentage >= 100,
            content_viewed=row.viewed_count,
            content_total=counts.content_total,
            assignments_submitted=submitted,
            assignments_total=counts.assignment_total,
            completed_at=row.completed_at,
        )

    async def get_module_detail(
        self, course_id: UUID, module_id: UUID, student_id: UUID
    ) -> ModuleDetail:
        """Module page: content list with viewed flags, after syncing completion."""
        progress = await self.sync_module_completion(course_id, module_id, student_id)
        module = await self._published_module(module_id, course_id)
        items = await self._catalog.list_published_content(module.id)
        row = await self._store.get(student_id, module.id)
        viewed = row.content_viewed if row else frozenset()
        return ModuleDetail(
            module=module,
            content=[ViewedContent(item=i, is_viewed=i.id in viewed) for i in items],
            progress=progress,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def record_content_viewed(
        self,
        student_id: UUID,
        module_id: UUID,
        content_id: UUID,
        *,
        course_id: UUID | None = None,
    ) -> CompletionResult:
        """Record that a student viewed a content item.

        Safe to repeat: a second view of the same item changes nothing
        and never re-reports an unlocked module.
        """
        module = await self._published_module(module_id, course_id)
        await self._require_unlocked(module, student_id)
        await self._published_content(module, content_id)

        async with self._lock.hold(f"{student_id}:{module.id}"):
            row, added = await self._store.add_viewed_content(
                student_id, module.id, content_id
            )
            result = await self._settle(module, student_id, row, trigger="content_view")
            await self._store.commit()
        CONTENT_VIEWS.labels(result="new" if added else "repeat").inc()
        return result

    async def record_content_viewed_best_effort(
        self,
        student_id: UUID,
        module_id: UUID,
        content_id: UUID,
        *,
        course_id: UUID | None = None,
    ) -> CompletionResult | None:
        """record_content_viewed with a timeout, for callers that must not block.

        Store outages and timeouts, including a failed commit, are logged
        and reported as None after rolling back the uncommitted writes.
        NotFound, NotEnrolled and ModuleLocked still propagate.
        """
        context = {
            "student_id": str(student_id),
            "module_id": str(module_id),
            "content_id": str(content_id),
        }
        try:
            return await asyncio.wait_for(
                self.record_content_viewed(
                    student_id, module_id, content_id, course_id=course_id
                ),
                self._view_tracking_timeout,
            )
        except StoreUnavailable as exc:
            VIEW_TRACKING_FAILURES.labels(reason="store_unavailable").inc()
            logger.warning("View tracking skipped: %s", exc.message, extra=context)
            await self._discard(context)
            return None
        except TimeoutError:
            VIEW_TRACKING_FAILURES.labels(reason="timeout").inc()
            logger.warning(
                "View tracking timed out after %.1fs",
                self._view_tracking_timeout,
                extra=context,
            )
            await self._discard(context)
            return None

    async def sync_module_completion(
        self, course_id: UUID, module_id: UUID, student_id: UUID
    ) -> CompletionResult:
        """Re-check completion without a content view.

        Covers modules finished by assignment submissions, which this
        service does not see as events.
        """
        module = await self._published_module(module_id, course_id)
        await self._require_unlocked(module, student_id)

        async with self._lock.hold(f"{student_id}:{module.id}"):
            row = await self._store.get(student_id, module.id)
            if row is None:
                row = ModuleProgress(student_id=student_id, module_id=module.id)
            result = await self._settle(module, student_id, row, trigger="sync")
            await self._store.commit()
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _discard(self, context: dict[str, str]) -> None:
        try:
            await self._store.rollback()
        except StoreUnavailable as exc:
            logger.warning(
                "Rollback after untracked view failed: %s", exc.message, extra=context
            )

    async def _module_counts(
        self, module: Module, student_id: UUID
    ) -> tuple[ModuleCounts, int]:
        counts = (await self._catalog.get_counts([module.id])).get(
            module.id, ModuleCounts()
        )
        submitted = (await self._ledger.count_submissions(student_id, [module.id])).get(
            module.id, 0
        )
        return counts, submitted

    async def _settle(
        self, module: Module, student_id: UUID, row: ModuleProgress, *, trigger: str
    ) -> CompletionResult:
        """Recompute progress; on the first reach of 100% stamp completion.

        Caller holds the per-key lock.
        """
        counts, submitted = await self._module_counts(module, student_id)
        percent = calculate_progress(
            row.viewed_count, counts.content_total, submitted, counts.assignment_total
        )

        completed = row.is_completed
        unlocked: UnlockedModule | None = None
        if percent >= 100 and not completed:
            completed = True
            if await self._store.mark_completed(student_id, module.id, self._clock()):
                MODULE_COMPLETIONS.labels(trigger=trigger).inc()
                logger.info(
                    "Module completed module=%s student=%s",
                    module.id,
                    student_id,
                    extra={"student_id": str(student_id), "module_id": str(module.id)},
                )
                try:
                    unlocked = await self._unlocked_by(module, student_id)
                except StoreUnavailable as exc:
                    logger.warning(
                        "Unlock lookup failed after completing module=%s: %s",
                        module.id,
                        exc.message,
                        extra={
                            "student_id": str(student_id),
                            "module_id": str(module.id),
                        },
                    )

        return CompletionResult(
            module_progress=100 if completed else percent,
            is_module_complete=completed,
            content_viewed_count=row.viewed_count,
            total_content_count=counts.content_total,
            assignment_submitted_count=submitted,
            total_assignment_count=counts.assignment_total,
            unlocked_module=unlocked,
        )

    async def _unlocked_by(
        self, module: Module, student_id: UUID
    ) -> UnlockedModule | None:
        snapshot = await self._course_snapshot(module.course_id, student_id)
        successor = newly_unlocked_successor(
            module, snapshot.modules, snapshot.progress, snapshot.completed
        )
        if successor is None:
            return None

        MODULE_UNLOCKS.inc()
        logger.info(
            "Module unlocked module=%s by=%s student=%s",
            successor.id,
            module.id,
            student_id,
            extra={"student_id": str(student_id), "module_id": str(successor.id)},
        )
        return UnlockedModule(id=successor.id, title=successor.title)
