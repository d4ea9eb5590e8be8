"""PostgreSQL implementation of EnrollmentRoster."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.tables import EnrollmentRow
from app.repos.pg_errors import store_errors


class PgEnrollmentRoster:
    """Satisfies the EnrollmentRoster Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def is_enrolled(self, student_id: UUID, course_id: UUID) -> bool:
        stmt = (
            select(EnrollmentRow.id)
            .where(EnrollmentRow.student_id == student_id)
            .where(EnrollmentRow.course_id == course_id)
        )
        with store_errors("enrollment lookup"):
            found = (await self._session.execute(stmt)).scalar_one_or_none()
        return found is not None
