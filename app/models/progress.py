from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from app.models.module import ContentItem, Module, ModuleCounts


class ModuleStatus(str, Enum):
    LOCKED = "locked"
    AVAILABLE = "available"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class ModuleProgress:
    """Durable per-(student, module) progress row.

    content_viewed has set semantics.  completed_at is set once and never
    cleared by the progress code.
    """

    student_id: UUID
    module_id: UUID
    content_viewed: frozenset[UUID] = field(default_factory=frozenset)
    completed_at: datetime.datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def viewed_count(self) -> int:
        return len(self.content_viewed)


@dataclass(frozen=True, slots=True)
class ModuleUnlockInfo:
    """Derived unlock view of one module for one student.

    Recomputed on every read, never persisted.
    """

    is_unlocked: bool
    status: ModuleStatus
    progress: int
    unlock_message: str | None = None
    prerequisite_module_id: UUID | None = None
    prerequisite_module_title: str | None = None


@dataclass(frozen=True, slots=True)
class UnlockedModule:
    id: UUID
    title: str


@dataclass(frozen=True, slots=True)
class CompletionResult:
    module_progress: int
    is_module_complete: bool
    content_viewed_count: int
    total_content_count: int
    assignment_submitted_count: int
    total_assignment_count: int
    unlocked_module: UnlockedModule | None = None


@dataclass(frozen=True, slots=True)
class ModuleProgressDetail:
    """Progress breakdown shown on the module progress page."""

    percentage: int
    is_complete: bool
    content_viewed: int
    content_total: int
    assignments_submitted: int
    assignments_total: int
    completed_at: datetime.datetime | None = None


@dataclass(frozen=True, slots=True)
class ModuleOverview:
    module: Module
    counts: ModuleCounts
    unlock: ModuleUnlockInfo


@dataclass(frozen=True, slots=True)
class CourseOverview:
    modules: list[ModuleOverview]
    course_progress: int


@dataclass(frozen=True, slots=True)
class ViewedContent:
    item: ContentItem
    is_viewed: bool


@dataclass(frozen=True, slots=True)
class ModuleDetail:
    module: Module
    content: list[ViewedContent]
    progress: CompletionResult
