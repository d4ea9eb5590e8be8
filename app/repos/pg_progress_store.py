"""PostgreSQL implementation of ProgressStore.

Both writes are single statements so they stay correct when several API
processes touch the same (student, module) row:

- content views use INSERT ... ON CONFLICT DO UPDATE with array_append
  guarded by "not already in the array"
- completion uses UPDATE ... WHERE completed_at IS NULL; the second of
  two racing updates re-checks the predicate after the first commits and
  matches zero rows

The session is shared with the catalog and ledger repos of the same
request; commit() and rollback() end that whole unit of work.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from uuid import UUID, uuid4

from sqlalchemy import func, literal, select, update
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import ModuleProgressRow
from app.models.progress import ModuleProgress
from app.repos.pg_errors import store_errors


class PgProgressStore:
    """Satisfies the ProgressStore Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, student_id: UUID, module_id: UUID) -> ModuleProgress | None:
        stmt = (
            select(ModuleProgressRow)
            .where(ModuleProgressRow.student_id == student_id)
            .where(ModuleProgressRow.module_id == module_id)
            .execution_options(populate_existing=True)
        )
        with store_errors("progress lookup"):
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_progress(row)

    async def get_many(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, ModuleProgress]:
        ids = list(module_ids)
        if not ids:
            return {}
        stmt = (
            select(ModuleProgressRow)
            .where(ModuleProgressRow.student_id == student_id)
            .where(ModuleProgressRow.module_id.in_(ids))
            .execution_options(populate_existing=True)
        )
        with store_errors("progress listing"):
            rows = (await self._session.execute(stmt)).scalars().all()
        return {r.module_id: _row_to_progress(r) for r in rows}

    async def get_or_create(self, student_id: UUID, module_id: UUID) -> ModuleProgress:
        stmt = (
            pg_insert(ModuleProgressRow)
            .values(
                id=uuid4(),
                student_id=student_id,
                module_id=module_id,
                content_viewed=[],
            )
            .on_conflict_do_nothing(constraint="uq_module_progress_key")
        )
        with store_errors("progress upsert"):
            await self._session.execute(stmt)
        row = await self.get(student_id, module_id)
        if row is None:
            raise RuntimeError("module_progress row missing after upsert")
        return row

    async def add_viewed_content(
        self, student_id: UUID, module_id: UUID, content_id: UUID
    ) -> tuple[ModuleProgress, bool]:
        content_param = literal(content_id, PgUUID(as_uuid=True))
        stmt = (
            pg_insert(ModuleProgressRow)
            .values(
                id=uuid4(),
                student_id=student_id,
                module_id=module_id,
                content_viewed=[content_id],
            )
            .on_conflict_do_update(
                constraint="uq_module_progress_key",
                set_={
                    "content_viewed": func.array_append(
                        ModuleProgressRow.content_viewed, content_param
                    )
                },
                where=~ModuleProgressRow.content_viewed.any(content_param),
            )
            .returning(ModuleProgressRow.id)
        )
        with store_errors("content view upsert"):
            added = (await self._session.execute(stmt)).scalar_one_or_none() is not None

        row = await self.get(student_id, module_id)
        if row is None:
            raise RuntimeError("module_progress row missing after upsert")
        return row, added

    async def mark_completed(
        self, student_id: UUID, module_id: UUID, completed_at: datetime.datetime
    ) -> bool:
        await self.get_or_create(student_id, module_id)
        stmt = (
            update(ModuleProgressRow)
            .where(ModuleProgressRow.student_id == student_id)
            .where(ModuleProgressRow.module_id == module_id)
            .where(ModuleProgressRow.completed_at.is_(None))
            .values(completed_at=completed_at)
        )
        with store_errors("completion update"):
            result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def commit(self) -> None:
        with store_errors("commit"):
            await self._session.commit()

    async def rollback(self) -> None:
        with store_errors("rollback"):
            await self._session.rollback()


def _row_to_progress(row: ModuleProgressRow) -> ModuleProgress:
    return ModuleProgress(
        student_id=row.student_id,
        module_id=row.module_id,
        content_viewed=frozenset(row.content_viewed or ()),
        completed_at=row.completed_at,
    )
