from __future__ import annotations

from typing import Protocol
from uuid import UUID


class EnrollmentRoster(Protocol):
    async def is_enrolled(self, student_id: UUID, course_id: UUID) -> bool: ...


class InMemoryEnrollmentRoster:
    def __init__(self) -> None:
        self._enrolled: set[tuple[UUID, UUID]] = set()  # (student_id, course_id)

    def enroll(self, student_id: UUID, course_id: UUID) -> None:
        self._enrolled.add((student_id, course_id))

    def clear(self) -> None:
        self._enrolled.clear()

    async def is_enrolled(self, student_id: UUID, course_id: UUID) -> bool:
        return (student_id, course_id) in self._enrolled
