"""Student-facing module endpoints.

  GET  /v1/courses/{course_id}/modules
       -> modules in order with unlock state + course progress
  GET  /v1/courses/{course_id}/modules/{module_id}
       -> content list with viewed flags (syncs completion first)
  GET  /v1/courses/{course_id}/modules/{module_id}/progress
  GET  /v1/courses/{course_id}/modules/{module_id}/content/{content_id}
       -> content payload, only when the module is unlocked
  POST /v1/courses/{course_id}/modules/{module_id}/content/{content_id}/complete
       -> record the view; store outages never fail the request

Unlock state is computed server-side on every call and never cached.
"""

from __future__ import annotations

import datetime
import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel

from app.api.dependencies import get_progress_service, require_student
from app.core.errors import (
    InvalidState,
    ModuleLocked,
    NotEnrolled,
    NotFound,
    ProgressError,
    StoreUnavailable,
)
from app.models.principal import Principal
from app.models.progress import CompletionResult, ModuleUnlockInfo
from app.services.module_progress import ModuleProgressService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/courses", tags=["modules"])

Service = Annotated[ModuleProgressService, Depends(get_progress_service)]
Student = Annotated[Principal, Depends(require_student)]


class ModuleOut(BaseModel):
    id: UUID
    title: str
    order_index: int
    content_count: int
    assignment_count: int
    progress: int
    status: str
    is_unlocked: bool
    unlock_message: str | None = None
    prerequisite_module_id: UUID | None = None
    prerequisite_module_title: str | None = None


class CourseModulesOut(BaseModel):
    modules: list[ModuleOut]
    course_progress: int


class UnlockedModuleOut(BaseModel):
    id: UUID
    title: str


class ProgressOut(BaseModel):
    percentage: int
    is_complete: bool
    content_viewed: int
    content_total: int
    assignments_submitted: int
    assignments_total: int
    completed_at: datetime.datetime | None = None


class ModuleProgressOut(BaseModel):
    progress: ProgressOut


class ContentSummaryOut(BaseModel):
    id: UUID
    title: str
    type: str
    order_index: int
    is_viewed: bool


class ModuleDetailOut(BaseModel):
    id: UUID
    title: str
    order_index: int
    content: list[ContentSummaryOut]
    progress: int
    is_complete: bool
    unlocked_module: UnlockedModuleOut | None = None


class ContentOut(BaseModel):
    id: UUID
    module_id: UUID
    title: str
    type: str
    order_index: int
    body: str | None = None


class ContentCompleteOut(BaseModel):
    tracked: bool
    module_progress: int | None = None
    is_module_complete: bool | None = None
    unlocked_module: UnlockedModuleOut | None = None


def _http_error(exc: ProgressError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, NotEnrolled):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message)
    if isinstance(exc, ModuleLocked):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "MODULE_LOCKED",
                "message": exc.message,
                "prerequisite_module_id": exc.prerequisite_module_id,
            },
        )
    if isinstance(exc, InvalidState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, StoreUnavailable):
        logger.error("Progress store unavailable: %s", exc.message)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Progress temporarily unavailable",
        )
    logger.error("Unhandled progress error code=%s: %s", exc.code, exc.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    )


def _module_out(module, counts, info: ModuleUnlockInfo) -> ModuleOut:
    return ModuleOut(
        id=module.id,
        title=module.title,
        order_index=module.order_index,
        content_count=counts.content_total,
        assignment_count=counts.assignment_total,
        progress=info.progress,
        status=info.status.value,
        is_unlocked=info.is_unlocked,
        unlock_message=info.unlock_message,
        prerequisite_module_id=info.prerequisite_module_id,
        prerequisite_module_title=info.prerequisite_module_title,
    )


def _unlocked_out(result: CompletionResult) -> UnlockedModuleOut | None:
    if result.unlocked_module is None:
        return None
    return UnlockedModuleOut(
        id=result.unlocked_module.id, title=result.unlocked_module.title
    )


@router.get("/{course_id}/modules", response_model=CourseModulesOut)
async def list_modules(
    course_id: UUID, principal: Student, service: Service
) -> CourseModulesOut:
    try:
        overview = await service.get_course_overview(course_id, principal.user_id)
    except ProgressError as exc:
        raise _http_error(exc) from None

    return CourseModulesOut(
        modules=[_module_out(m.module, m.counts, m.unlock) for m in overview.modules],
        course_progress=overview.course_progress,
    )


@router.get("/{course_id}/modules/{module_id}", response_model=ModuleDetailOut)
async def get_module(
    course_id: UUID, module_id: UUID, principal: Student, service: Service
) -> ModuleDetailOut:
    try:
        detail = await service.get_module_detail(
            course_id, module_id, principal.user_id
        )
    except ProgressError as exc:
        raise _http_error(exc) from None

    return ModuleDetailOut(
        id=detail.module.id,
        title=detail.module.title,
        order_index=detail.module.order_index,
        content=[
            ContentSummaryOut(
                id=c.item.id,
                title=c.item.title,
                type=c.item.type,
                order_index=c.item.order_index,
                is_viewed=c.is_viewed,
            )
            for c in detail.content
        ],
        progress=detail.progress.module_progress,
        is_complete=detail.progress.is_module_complete,
        unlocked_module=_unlocked_out(detail.progress),
    )


@router.get(
    "/{course_id}/modules/{module_id}/progress", response_model=ModuleProgressOut
)
async def get_module_progress(
    course_id: UUID, module_id: UUID, principal: Student, service: Service
) -> ModuleProgressOut:
    try:
        detail = await service.get_module_progress(
            course_id, module_id, principal.user_id
        )
    except ProgressError as exc:
        raise _http_error(exc) from None

    return ModuleProgressOut(
        progress=ProgressOut(
            percentage=detail.percentage,
            is_complete=detail.is_complete,
            content_viewed=detail.content_viewed,
            content_total=detail.content_total,
            assignments_submitted=detail.assignments_submitted,
            assignments_total=detail.assignments_total,
            completed_at=detail.completed_at,
        )
    )


@router.get(
    "/{course_id}/modules/{module_id}/content/{content_id}",
    response_model=ContentOut,
)
async def get_content(
    course_id: UUID,
    module_id: UUID,
    content_id: UUID,
    principal: Student,
    service: Service,
) -> ContentOut:
    try:
        item = await service.get_content(
            course_id, module_id, content_id, principal.user_id
        )
    except ProgressError as exc:
        raise _http_error(exc) from None

    return ContentOut(
        id=item.id,
        module_id=item.module_id,
        title=item.title,
        type=item.type,
        order_index=item.order_index,
        body=item.body,
    )


@router.post(
    "/{course_id}/modules/{module_id}/content/{content_id}/complete",
    response_model=ContentCompleteOut,
)
async def complete_content(
    course_id: UUID,
    module_id: UUID,
    content_id: UUID,
    principal: Student,
    service: Service,
    response: Response,
) -> ContentCompleteOut:
    try:
        result = await service.record_content_viewed_best_effort(
            principal.user_id, module_id, content_id, course_id=course_id
        )
    except ProgressError as exc:
        raise _http_error(exc) from None

    if result is None:
        response.status_code = status.HTTP_202_ACCEPTED
        return ContentCompleteOut(tracked=False)

    return ContentCompleteOut(
        tracked=True,
        module_progress=result.module_progress,
        is_module_complete=result.is_module_complete,
        unlocked_module=_unlocked_out(result),
    )
