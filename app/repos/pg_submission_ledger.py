"""PostgreSQL implementation of SubmissionLedger."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import AssignmentRow, SubmissionRow
from app.repos.pg_errors import store_errors


class PgSubmissionLedger:
    """Satisfies the SubmissionLedger Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def count_submissions(
        self, student_id: UUID, module_ids: Iterable[UUID]
    ) -> dict[UUID, int]:
        ids = list(module_ids)
        if not ids:
            return {}

        # Resubmissions of one assignment count once.
        stmt = (
            select(
                AssignmentRow.module_id,
                func.count(func.distinct(SubmissionRow.assignment_id)),
            )
            .join(AssignmentRow, AssignmentRow.id == SubmissionRow.assignment_id)
            .where(SubmissionRow.student_id == student_id)
            .where(AssignmentRow.module_id.in_(ids))
            .where(AssignmentRow.is_published.is_(True))
            .group_by(AssignmentRow.module_id)
        )
        with store_errors("submission counts"):
            found = dict((await self._session.execute(stmt)).tuples().all())
        return {module_id: found.get(module_id, 0) for module_id in ids}
