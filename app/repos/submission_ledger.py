from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol
from uuid import UUID

from app.repos.module_catalog import InMemoryModuleCatalog


class SubmissionLedger(Protocol):
    async def count_submissions(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, int]:
        """Distinct published assignments the student has submitted, per module."""
        ...


class InMemorySubmissionLedger:
    def __init__(self, catalog: InMemoryModuleCatalog) -> None:
        self._catalog = catalog
        self._submitted: dict[UUID, set[UUID]] = {}  # student_id -> assignment ids

    def record_submission(self, student_id: UUID, assignment_id: UUID) -> None:
        self._submitted.setdefault(student_id, set()).add(assignment_id)

    def clear(self) -> None:
        self._submitted.clear()

    async def count_submissions(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, int]:
        counts: dict[UUID, int] = dict.fromkeys(module_ids, 0)
        for assignment_id in self._submitted.get(student_id, ()):
            module_id = self._catalog.assignment_module(assignment_id)
            if module_id in counts:
                counts[module_id] += 1
        return counts
