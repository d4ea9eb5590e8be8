from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class Module:
    """An ordered section of a course.

    order_index is 0-based and defines the unlock sequence within the
    course.  Instructors own every field; progress code only reads them.
    """

    id: UUID
    course_id: UUID
    title: str
    order_index: int
    requires_previous: bool = True
    is_published: bool = True

    @staticmethod
    def new(
        *,
        course_id: UUID,
        title: str,
        order_index: int,
        requires_previous: bool = True,
        is_published: bool = True,
    ) -> Module:
        return Module(
            id=uuid4(),
            course_id=course_id,
            title=title,
            order_index=order_index,
            requires_previous=requires_previous,
            is_published=is_published,
        )


@dataclass(frozen=True, slots=True)
class ContentItem:
    id: UUID
    module_id: UUID
    title: str
    type: str = "text"  # text|video|document|link
    order_index: int = 0
    is_published: bool = True
    body: str | None = None

    @staticmethod
    def new(
        *,
        module_id: UUID,
        title: str,
        type: str = "text",
        order_index: int = 0,
        is_published: bool = True,
        body: str | None = None,
    ) -> ContentItem:
        return ContentItem(
            id=uuid4(),
            module_id=module_id,
            title=title,
            type=type,
            order_index=order_index,
            is_published=is_published,
            body=body,
        )


@dataclass(frozen=True, slots=True)
class ModuleCounts:
    """Published content and assignment totals for one module."""

    content_total: int = 0
    assignment_total: int = 0
