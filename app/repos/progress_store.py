from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import replace
from typing import Protocol
from uuid import UUID

from app.models.progress import ModuleProgress


class ProgressStore(Protocol):
    async def get(self, student_id: UUID, module_id: UUID) -> ModuleProgress | None: ...
    async def get_many(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, ModuleProgress]: ...
    async def get_or_create(
        self, student_id: UUID, module_id: UUID
    ) -> ModuleProgress: ...
    async def add_viewed_content(
        self, student_id: UUID, module_id: UUID, content_id: UUID
    ) -> tuple[ModuleProgress, bool]:
        """Upsert the row and set-add content_id.

        Returns the row and whether content_id was newly added.
        """
        ...

    async def mark_completed(
        self, student_id: UUID, module_id: UUID, completed_at: datetime.datetime
    ) -> bool:
        """Set completed_at only if it is still null.

        Returns True only for the call that made the transition.
        """
        ...

    async def commit(self) -> None:
        """Make the writes of this unit of work durable."""
        ...

    async def rollback(self) -> None:
        """Discard writes that were not committed."""
        ...


class InMemoryProgressStore:
    def __init__(self) -> None:
        self._rows: dict[tuple[UUID, UUID], ModuleProgress] = {}

    def clear(self) -> None:
        self._rows.clear()

    async def get(self, student_id: UUID, module_id: UUID) -> ModuleProgress | None:
        return self._rows.get((student_id, module_id))

    async def get_many(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, ModuleProgress]:
        found: dict[UUID, ModuleProgress] = {}
        for module_id in module_ids:
            row = self._rows.get((student_id, module_id))
            if row is not None:
                found[module_id] = row
        return found

    async def get_or_create(self, student_id: UUID, module_id: UUID) -> ModuleProgress:
        key = (student_id, module_id)
        row = self._rows.get(key)
        if row is None:
            row = ModuleProgress(student_id=student_id, module_id=module_id)
            self._rows[key] = row
        return row

    async def add_viewed_content(
        self, student_id: UUID, module_id: UUID, content_id: UUID
    ) -> tuple[ModuleProgress, bool]:
        row = await self.get_or_create(student_id, module_id)
        if content_id in row.content_viewed:
            return row, False
        updated = replace(row, content_viewed=row.content_viewed | {content_id})
        self._rows[(student_id, module_id)] = updated
        return updated, True

    async def mark_completed(
        self, student_id: UUID, module_id: UUID, completed_at: datetime.datetime
    ) -> bool:
        row = await self.get_or_create(student_id, module_id)
        if row.completed_at is not None:
            return False
        self._rows[(student_id, module_id)] = replace(row, completed_at=completed_at)
        return True

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass
