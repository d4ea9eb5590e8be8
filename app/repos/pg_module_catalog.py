"""PostgreSQL implementation of ModuleCatalog."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import AssignmentRow, ContentItemRow, ModuleRow
from app.models.module import ContentItem, Module, ModuleCounts
from app.repos.pg_errors import store_errors


class PgModuleCatalog:
    """Satisfies the ModuleCatalog Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_module(self, module_id: UUID) -> Module | None:
        stmt = select(ModuleRow).where(ModuleRow.id == module_id)
        with store_errors("module lookup"):
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_module(row)

    async def list_published_modules(self, course_id: UUID) -> list[Module]:
        stmt = (
            select(ModuleRow)
            .where(ModuleRow.course_id == course_id)
            .where(ModuleRow.is_published.is_(True))
            .order_by(ModuleRow.order_index, ModuleRow.id)
        )
        with store_errors("module listing"):
            rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_module(r) for r in rows]

    async def get_content(self, content_id: UUID) -> ContentItem | None:
        stmt = select(ContentItemRow).where(ContentItemRow.id == content_id)
        with store_errors("content lookup"):
            row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_content(row)

    async def list_published_content(self, module_id: UUID) -> list[ContentItem]:
        stmt = (
            select(ContentItemRow)
            .where(ContentItemRow.module_id == module_id)
            .where(ContentItemRow.is_published.is_(True))
            .order_by(ContentItemRow.order_index)
        )
        with store_errors("content listing"):
            rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_content(r) for r in rows]

    async def get_counts(self, module_ids: Iterable[UUID]) -> dict[UUID, ModuleCounts]:
        ids = list(module_ids)
        if not ids:
            return {}

        content_stmt = (
            select(ContentItemRow.module_id, func.count())
            .where(ContentItemRow.module_id.in_(ids))
            .where(ContentItemRow.is_published.is_(True))
            .group_by(ContentItemRow.module_id)
        )
        assignment_stmt = (
            select(AssignmentRow.module_id, func.count())
            .where(AssignmentRow.module_id.in_(ids))
            .where(AssignmentRow.is_published.is_(True))
            .group_by(AssignmentRow.module_id)
        )
        with store_errors("module counts"):
            content = dict((await self._session.execute(content_stmt)).tuples().all())
            assignments = dict(
                (await self._session.execute(assignment_stmt)).tuples().all()
            )

        return {
            module_id: ModuleCounts(
                content_total=content.get(module_id, 0),
                assignment_total=assignments.get(module_id, 0),
            )
            for module_id in ids
        }


def _row_to_module(row: ModuleRow) -> Module:
    return Module(
        id=row.id,
        course_id=row.course_id,
        title=row.title,
        order_index=row.order_index,
        requires_previous=row.requires_previous,
        is_published=row.is_published,
    )


def _row_to_content(row: ContentItemRow) -> ContentItem:
    return ContentItem(
        id=row.id,
        module_id=row.module_id,
        title=row.title,
        type=row.type,
        order_index=row.order_index,
        is_published=row.is_published,
        body=row.body,
    )
