from __future__ import annotations

import asyncio
import datetime
import uuid

import pytest
from prometheus_client import REGISTRY

from app.core.errors import ModuleLocked, NotEnrolled, NotFound, StoreUnavailable
from app.models.module import ContentItem, Module
from app.models.progress import ModuleStatus
from app.repos.enrollment_roster import InMemoryEnrollmentRoster
from app.repos.module_catalog import InMemoryModuleCatalog
from app.repos.progress_store import InMemoryProgressStore
from app.repos.submission_ledger import InMemorySubmissionLedger
from app.services.key_lock import InMemoryKeyLock
from app.services.module_progress import ModuleProgressService
from tests.conftest import CourseFixture, build_course

NOW = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.UTC)
STUDENT = uuid.uuid4()


class _Env:
    def __init__(
        self,
        store: InMemoryProgressStore | None = None,
        ledger_cls: type[InMemorySubmissionLedger] = InMemorySubmissionLedger,
        **kwargs,
    ) -> None:
        self.catalog = InMemoryModuleCatalog()
        self.ledger = ledger_cls(self.catalog)
        self.store = store or InMemoryProgressStore()
        self.enrollments = InMemoryEnrollmentRoster()
        self.service = ModuleProgressService(
            catalog=self.catalog,
            ledger=self.ledger,
            store=self.store,
            enrollments=self.enrollments,
            key_lock=InMemoryKeyLock(timeout_seconds=1.0),
            clock=lambda: NOW,
            **kwargs,
        )

    def course(self, layout: list[tuple[int, int]]) -> CourseFixture:
        """Seed a course with STUDENT enrolled."""
        return build_course(
            self.catalog, layout, roster=self.enrollments, students=[STUDENT]
        )


def _run(coro):
    return asyncio.run(coro)


def _sample(name: str, labels: dict | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


# ---------------------------------------------------------------------------
# record_content_viewed
# ---------------------------------------------------------------------------


def test_view_updates_progress() -> None:
    env = _Env()
    course = env.course([(4, 0), (1, 0)])
    first = course.content[0][0]

    result = _run(
        env.service.record_content_viewed(STUDENT, course.modules[0].id, first.id)
    )

    # 1/4 of content + the free assignment half
    assert result.module_progress == 63
    assert not result.is_module_complete
    assert result.content_viewed_count == 1
    assert result.total_content_count == 4
    assert result.unlocked_module is None


def test_repeated_view_changes_nothing() -> None:
    env = _Env()
    course = env.course([(2, 0)])
    module, item = course.modules[0], course.content[0][0]

    first = _run(env.service.record_content_viewed(STUDENT, module.id, item.id))
    second = _run(env.service.record_content_viewed(STUDENT, module.id, item.id))

    assert first == second
    row = _run(env.store.get(STUDENT, module.id))
    assert row is not None
    assert row.content_viewed == frozenset({item.id})


def test_completing_module_unlocks_next_once() -> None:
    env = _Env()
    course = env.course([(2, 0), (1, 0)])
    m1, m2 = course.modules
    a, b = course.content[0]

    _run(env.service.record_content_viewed(STUDENT, m1.id, a.id))
    done = _run(env.service.record_content_viewed(STUDENT, m1.id, b.id))

    assert done.is_module_complete
    assert done.module_progress == 100
    assert done.unlocked_module is not None
    assert done.unlocked_module.id == m2.id
    assert done.unlocked_module.title == "Module 2"

    again = _run(env.service.record_content_viewed(STUDENT, m1.id, b.id))
    assert again.is_module_complete
    assert again.unlocked_module is None

    row = _run(env.store.get(STUDENT, m1.id))
    assert row is not None
    assert row.completed_at == NOW


def test_completion_of_last_module_unlocks_nothing() -> None:
    env = _Env()
    course = env.course([(1, 0)])
    result = _run(
        env.service.record_content_viewed(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )
    assert result.is_module_complete
    assert result.unlocked_module is None


def test_unlock_cascades_through_course() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0), (1, 0)])
    m1, m2, m3 = course.modules

    r1 = _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))
    assert r1.unlocked_module is not None and r1.unlocked_module.id == m2.id

    r2 = _run(env.service.record_content_viewed(STUDENT, m2.id, course.content[1][0].id))
    assert r2.unlocked_module is not None and r2.unlocked_module.id == m3.id

    infos = _run(env.service.get_modules_unlock_info(course.id, STUDENT))
    assert [infos[m.id].status for m in course.modules] == [
        ModuleStatus.COMPLETED,
        ModuleStatus.COMPLETED,
        ModuleStatus.IN_PROGRESS,  # no assignments: starts at 50
    ]


def test_view_on_locked_module_is_rejected() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    m1, m2 = course.modules

    with pytest.raises(ModuleLocked) as exc_info:
        _run(env.service.record_content_viewed(STUDENT, m2.id, course.content[1][0].id))

    assert exc_info.value.prerequisite_module_id == str(m1.id)
    assert _run(env.store.get(STUDENT, m2.id)) is None


def test_view_of_content_from_another_module_is_not_found() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    with pytest.raises(NotFound):
        _run(
            env.service.record_content_viewed(
                STUDENT, course.modules[0].id, course.content[1][0].id
            )
        )


def test_view_of_unpublished_content_is_not_found() -> None:
    env = _Env()
    course = env.course([(1, 0)])
    draft = ContentItem.new(
        module_id=course.modules[0].id, title="Draft", is_published=False
    )
    env.catalog.add_content(draft)
    with pytest.raises(NotFound):
        _run(env.service.record_content_viewed(STUDENT, course.modules[0].id, draft.id))


def test_unknown_or_unpublished_module_is_not_found() -> None:
    env = _Env()
    hidden = Module.new(
        course_id=uuid.uuid4(), title="Hidden", order_index=0, is_published=False
    )
    env.catalog.add_module(hidden)
    with pytest.raises(NotFound):
        _run(env.service.record_content_viewed(STUDENT, uuid.uuid4(), uuid.uuid4()))
    with pytest.raises(NotFound):
        _run(env.service.record_content_viewed(STUDENT, hidden.id, uuid.uuid4()))


def test_module_from_other_course_is_not_found() -> None:
    env = _Env()
    course = env.course([(1, 0)])
    with pytest.raises(NotFound):
        _run(
            env.service.record_content_viewed(
                STUDENT,
                course.modules[0].id,
                course.content[0][0].id,
                course_id=uuid.uuid4(),
            )
        )


def test_completed_module_stays_completed_when_content_is_added() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    m1, m2 = course.modules
    _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))

    extra = ContentItem.new(module_id=m1.id, title="Added later", order_index=1)
    env.catalog.add_content(extra)

    result = _run(env.service.sync_module_completion(course.id, m1.id, STUDENT))
    assert result.is_module_complete
    assert result.module_progress == 100

    infos = _run(env.service.get_modules_unlock_info(course.id, STUDENT))
    assert infos[m1.id].status is ModuleStatus.COMPLETED
    assert infos[m2.id].is_unlocked


def test_concurrent_views_report_unlock_exactly_once() -> None:
    env = _Env()
    course = env.course([(3, 0), (1, 0)])
    m1 = course.modules[0]

    async def main():
        views = [
            env.service.record_content_viewed(STUDENT, m1.id, item.id)
            for item in course.content[0]
        ]
        repeats = [
            env.service.record_content_viewed(STUDENT, m1.id, course.content[0][-1].id)
            for _ in range(3)
        ]
        return await asyncio.gather(*views, *repeats)

    before = _sample("module_completions_total", {"trigger": "content_view"})
    results = _run(main())
    after = _sample("module_completions_total", {"trigger": "content_view"})

    unlocks = [r.unlocked_module for r in results if r.unlocked_module is not None]
    assert len(unlocks) == 1
    assert unlocks[0].id == course.modules[1].id
    assert after - before == 1
    assert results[-1].is_module_complete


def test_progress_never_decreases_across_views() -> None:
    env = _Env()
    course = env.course([(5, 2)])
    m1 = course.modules[0]
    seen = []
    for item in course.content[0]:
        result = _run(env.service.record_content_viewed(STUDENT, m1.id, item.id))
        seen.append(result.module_progress)
    assert seen == sorted(seen)
    assert seen[-1] == 50


# ---------------------------------------------------------------------------
# Assignments and sync_module_completion
# ---------------------------------------------------------------------------


def test_submissions_complete_module_on_sync() -> None:
    env = _Env()
    course = env.course([(1, 2), (1, 0)])
    m1, m2 = course.modules
    _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))

    for assignment_id in course.assignments[0]:
        env.ledger.record_submission(STUDENT, assignment_id)

    result = _run(env.service.sync_module_completion(course.id, m1.id, STUDENT))
    assert result.is_module_complete
    assert result.assignment_submitted_count == 2
    assert result.unlocked_module is not None
    assert result.unlocked_module.id == m2.id

    again = _run(env.service.sync_module_completion(course.id, m1.id, STUDENT))
    assert again.unlocked_module is None


def test_resubmitting_an_assignment_counts_once() -> None:
    env = _Env()
    course = env.course([(0, 2)])
    m1 = course.modules[0]
    first = course.assignments[0][0]
    env.ledger.record_submission(STUDENT, first)
    env.ledger.record_submission(STUDENT, first)

    detail = _run(env.service.get_module_progress(course.id, m1.id, STUDENT))
    assert detail.assignments_submitted == 1
    assert detail.percentage == 75


def test_unpublished_assignments_do_not_count() -> None:
    env = _Env()
    course = env.course([(0, 1)])
    m1 = course.modules[0]
    draft = env.catalog.add_assignment(m1.id, is_published=False)
    env.ledger.record_submission(STUDENT, draft)

    detail = _run(env.service.get_module_progress(course.id, m1.id, STUDENT))
    assert detail.assignments_total == 1
    assert detail.assignments_submitted == 0


def test_sync_on_locked_module_is_rejected() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    with pytest.raises(ModuleLocked):
        _run(env.service.sync_module_completion(course.id, course.modules[1].id, STUDENT))


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


def test_course_overview_orders_modules_and_averages_progress() -> None:
    env = _Env()
    course = env.course([(2, 0), (1, 1), (1, 0)])
    m1 = course.modules[0]
    _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))

    overview = _run(env.service.get_course_overview(course.id, STUDENT))

    assert [o.module.id for o in overview.modules] == [m.id for m in course.modules]
    assert overview.modules[0].unlock.progress == 75
    assert overview.modules[1].counts.assignment_total == 1
    assert not overview.modules[1].unlock.is_unlocked
    # only module 1 is unlocked
    assert overview.course_progress == 75


def test_get_module_progress_creates_row_lazily() -> None:
    env = _Env()
    course = env.course([(2, 0)])
    m1 = course.modules[0]
    assert _run(env.store.get(STUDENT, m1.id)) is None

    detail = _run(env.service.get_module_progress(course.id, m1.id, STUDENT))

    assert detail.percentage == 50
    assert detail.content_viewed == 0
    assert detail.content_total == 2
    assert not detail.is_complete
    assert _run(env.store.get(STUDENT, m1.id)) is not None


def test_get_module_progress_on_locked_module_is_rejected() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    with pytest.raises(ModuleLocked):
        _run(env.service.get_module_progress(course.id, course.modules[1].id, STUDENT))


def test_get_content_is_gated_by_unlock() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    m1, m2 = course.modules

    item = _run(env.service.get_content(course.id, m1.id, course.content[0][0].id, STUDENT))
    assert item.body == "Body of lesson 1.1"

    with pytest.raises(ModuleLocked):
        _run(env.service.get_content(course.id, m2.id, course.content[1][0].id, STUDENT))


def test_module_detail_flags_viewed_content() -> None:
    env = _Env()
    course = env.course([(2, 0)])
    m1 = course.modules[0]
    a, b = course.content[0]
    _run(env.service.record_content_viewed(STUDENT, m1.id, a.id))

    detail = _run(env.service.get_module_detail(course.id, m1.id, STUDENT))

    assert [(c.item.id, c.is_viewed) for c in detail.content] == [
        (a.id, True),
        (b.id, False),
    ]
    assert detail.progress.module_progress == 75


def test_module_unlock_info_for_single_module() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    info = _run(env.service.get_module_unlock_info(course.id, course.modules[1].id, STUDENT))
    assert not info.is_unlocked
    assert info.prerequisite_module_id == course.modules[0].id


def test_progress_is_per_student() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    m1, m2 = course.modules
    _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))

    other = uuid.uuid4()
    env.enrollments.enroll(other, course.id)
    infos = _run(env.service.get_modules_unlock_info(course.id, other))
    assert not infos[m2.id].is_unlocked


# ---------------------------------------------------------------------------
# record_content_viewed_best_effort
# ---------------------------------------------------------------------------


class _BrokenStore(InMemoryProgressStore):
    async def add_viewed_content(self, student_id, module_id, content_id):
        raise StoreUnavailable("connection refused")


class _SlowStore(InMemoryProgressStore):
    async def add_viewed_content(self, student_id, module_id, content_id):
        await asyncio.sleep(1)
        return await super().add_viewed_content(student_id, module_id, content_id)


def test_best_effort_swallows_store_outage(caplog) -> None:
    env = _Env(store=_BrokenStore())
    course = env.course([(1, 0)])
    before = _sample("view_tracking_failures_total", {"reason": "store_unavailable"})

    with caplog.at_level("WARNING", logger="app.services.module_progress"):
        result = _run(
            env.service.record_content_viewed_best_effort(
                STUDENT, course.modules[0].id, course.content[0][0].id
            )
        )

    assert result is None
    after = _sample("view_tracking_failures_total", {"reason": "store_unavailable"})
    assert after - before == 1
    assert "View tracking skipped" in caplog.text


def test_best_effort_gives_up_after_timeout() -> None:
    env = _Env(store=_SlowStore(), view_tracking_timeout_seconds=0.01)
    course = env.course([(1, 0)])
    before = _sample("view_tracking_failures_total", {"reason": "timeout"})

    result = _run(
        env.service.record_content_viewed_best_effort(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )

    assert result is None
    assert _sample("view_tracking_failures_total", {"reason": "timeout"}) - before == 1


def test_best_effort_still_rejects_locked_and_missing() -> None:
    env = _Env()
    course = env.course([(1, 0), (1, 0)])
    with pytest.raises(ModuleLocked):
        _run(
            env.service.record_content_viewed_best_effort(
                STUDENT, course.modules[1].id, course.content[1][0].id
            )
        )
    with pytest.raises(NotFound):
        _run(
            env.service.record_content_viewed_best_effort(
                STUDENT, course.modules[0].id, uuid.uuid4()
            )
        )


def test_best_effort_returns_result_when_store_is_healthy() -> None:
    env = _Env()
    course = env.course([(1, 0)])
    result = _run(
        env.service.record_content_viewed_best_effort(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )
    assert result is not None
    assert result.is_module_complete


class _LedgerFailingAfterCompletion(InMemorySubmissionLedger):
    """Fails from the third lookup on: the snapshot taken after completion."""

    def __init__(self, catalog) -> None:
        super().__init__(catalog)
        self.calls = 0

    async def count_submissions(self, student_id, module_ids):
        self.calls += 1
        if self.calls >= 3:
            raise StoreUnavailable("connection reset")
        return await super().count_submissions(student_id, module_ids)


def test_completion_is_reported_when_unlock_lookup_fails(caplog) -> None:
    env = _Env(ledger_cls=_LedgerFailingAfterCompletion)
    course = env.course([(1, 0), (1, 0)])
    m1 = course.modules[0]

    with caplog.at_level("WARNING", logger="app.services.module_progress"):
        result = _run(
            env.service.record_content_viewed_best_effort(
                STUDENT, m1.id, course.content[0][0].id
            )
        )

    assert result is not None
    assert result.is_module_complete
    assert result.module_progress == 100
    assert result.unlocked_module is None
    assert "Unlock lookup failed" in caplog.text
    row = _run(env.store.get(STUDENT, m1.id))
    assert row is not None and row.completed_at == NOW


class _CommitFailingStore(InMemoryProgressStore):
    def __init__(self) -> None:
        super().__init__()
        self.rollbacks = 0

    async def commit(self) -> None:
        raise StoreUnavailable("database commit failed")

    async def rollback(self) -> None:
        self.rollbacks += 1


class _CountingStore(InMemoryProgressStore):
    def __init__(self) -> None:
        super().__init__()
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


def test_view_is_committed_before_it_is_reported() -> None:
    store = _CountingStore()
    env = _Env(store=store)
    course = env.course([(2, 0)])

    _run(
        env.service.record_content_viewed(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )

    assert store.commits == 1
    assert store.rollbacks == 0


def test_failed_commit_propagates_from_record_content_viewed() -> None:
    env = _Env(store=_CommitFailingStore())
    course = env.course([(1, 0)])
    with pytest.raises(StoreUnavailable):
        _run(
            env.service.record_content_viewed(
                STUDENT, course.modules[0].id, course.content[0][0].id
            )
        )


def test_best_effort_reports_failed_commit_as_untracked() -> None:
    store = _CommitFailingStore()
    env = _Env(store=store)
    course = env.course([(1, 0)])
    before = _sample("view_tracking_failures_total", {"reason": "store_unavailable"})

    result = _run(
        env.service.record_content_viewed_best_effort(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )

    assert result is None
    assert store.rollbacks == 1
    after = _sample("view_tracking_failures_total", {"reason": "store_unavailable"})
    assert after - before == 1


class _SlowCountingStore(_CountingStore):
    async def add_viewed_content(self, student_id, module_id, content_id):
        await asyncio.sleep(1)
        return await super().add_viewed_content(student_id, module_id, content_id)


def test_best_effort_timeout_rolls_back_without_committing() -> None:
    store = _SlowCountingStore()
    env = _Env(store=store, view_tracking_timeout_seconds=0.01)
    course = env.course([(1, 0)])

    result = _run(
        env.service.record_content_viewed_best_effort(
            STUDENT, course.modules[0].id, course.content[0][0].id
        )
    )

    assert result is None
    assert store.commits == 0
    assert store.rollbacks == 1


# ---------------------------------------------------------------------------
# enrollment
# ---------------------------------------------------------------------------


def _unenrolled_course(env: _Env) -> CourseFixture:
    return build_course(env.catalog, [(1, 0), (1, 0)], roster=env.enrollments)


def test_reads_require_enrollment() -> None:
    env = _Env()
    course = _unenrolled_course(env)
    m1 = course.modules[0]

    with pytest.raises(NotEnrolled):
        _run(env.service.get_modules_unlock_info(course.id, STUDENT))
    with pytest.raises(NotEnrolled):
        _run(env.service.get_course_overview(course.id, STUDENT))
    with pytest.raises(NotEnrolled):
        _run(env.service.get_module_unlock_info(course.id, m1.id, STUDENT))
    with pytest.raises(NotEnrolled):
        _run(env.service.get_module_progress(course.id, m1.id, STUDENT))
    with pytest.raises(NotEnrolled):
        _run(env.service.get_module_detail(course.id, m1.id, STUDENT))
    with pytest.raises(NotEnrolled):
        _run(
            env.service.get_content(
                course.id, m1.id, course.content[0][0].id, STUDENT
            )
        )


def test_writes_require_enrollment_and_record_nothing() -> None:
    env = _Env()
    course = _unenrolled_course(env)
    m1 = course.modules[0]

    with pytest.raises(NotEnrolled):
        _run(env.service.record_content_viewed(STUDENT, m1.id, course.content[0][0].id))
    with pytest.raises(NotEnrolled):
        _run(
            env.service.record_content_viewed_best_effort(
                STUDENT, m1.id, course.content[0][0].id
            )
        )
    with pytest.raises(NotEnrolled):
        _run(env.service.sync_module_completion(course.id, m1.id, STUDENT))

    assert _run(env.store.get(STUDENT, m1.id)) is None


def test_enrollment_in_another_course_does_not_count() -> None:
    env = _Env()
    env.course([(1, 0)])
    other = _unenrolled_course(env)
    with pytest.raises(NotEnrolled):
        _run(env.service.get_course_overview(other.id, STUDENT))
