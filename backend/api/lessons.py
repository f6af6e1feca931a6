"""Lessons and steps API"""
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import insufficient_permissions, raise_error, raise_result
from core.responses import envelope
from core.security import CurrentUser, get_current_user, require_admin, require_teacher_plus
from engines.content import ContentService
from engines.overrides import OverrideService

router = APIRouter()
content = ContentService()
overrides = OverrideService()


class LessonCreate(BaseModel):
    module_id: UUID
    title: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(default=None, max_length=255)
    description: str | None = None
    order_index: int = Field(0, ge=0)
    estimated_time_min: int = Field(10, ge=0)
    requires_quiz: bool = False
    requires_case: bool = False
    passing_score: int | None = Field(default=None, ge=0, le=100)
    is_published: bool = True


class LessonUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    order_index: int | None = Field(default=None, ge=0)
    estimated_time_min: int | None = Field(default=None, ge=0)
    requires_quiz: bool | None = None
    requires_case: bool | None = None
    passing_score: int | None = Field(default=None, ge=0, le=100)
    is_published: bool | None = None
    is_active: bool | None = None


class LessonResponse(BaseModel):
    id: UUID
    module_id: UUID
    title: str
    slug: str
    description: str | None
    order_index: int
    estimated_time_min: int | None
    requires_quiz: bool
    requires_case: bool
    passing_score: int | None
    is_published: bool
    is_active: bool

    class Config:
        from_attributes = True


class StepCreate(BaseModel):
    title: str | None = None
    content_type: str = "text"
    content: dict[str, Any] = Field(default_factory=dict)
    order_index: int | None = Field(default=None, ge=0)


class StepUpdate(BaseModel):
    title: str | None = None
    content_type: str | None = None
    content: dict[str, Any] | None = None
    order_index: int | None = Field(default=None, ge=0)
    is_active: bool | None = None


class StepResponse(BaseModel):
    id: UUID
    lesson_id: UUID
    title: str | None
    content_type: str
    content: dict[str, Any] | None
    order_index: int
    is_active: bool

    class Config:
        from_attributes = True


class StepReorder(BaseModel):
    step_ids: list[UUID] = Field(min_length=1)


@router.put("/steps/{step_id}")
async def update_step(
    step_id: UUID,
    payload: StepUpdate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.update_step(db, user.id, step_id, payload.model_dump(exclude_unset=True))
    raise_result(result)
    return envelope(StepResponse.model_validate(result.unwrap()), "Step updated")


@router.delete("/steps/{step_id}")
async def delete_step(
    step_id: UUID,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.delete_step(db, user.id, step_id)
    raise_result(result)
    return envelope({"id": step_id}, "Step deleted")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_lesson(
    payload: LessonCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    data = payload.model_dump(exclude={"module_id"})
    result = await content.create_lesson(db, user.id, payload.module_id, data)
    raise_result(result)
    return envelope(LessonResponse.model_validate(result.unwrap()), "Lesson created")


@router.get("/{lesson_id}")
async def get_lesson(
    lesson_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await content.get_lesson(db, lesson_id)
    raise_result(result)
    return envelope(LessonResponse.model_validate(result.unwrap()))


@router.put("/{lesson_id}")
async def update_lesson(
    lesson_id: UUID,
    payload: LessonUpdate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.update_lesson(db, user.id, lesson_id, payload.model_dump(exclude_unset=True))
    raise_result(result)
    return envelope(LessonResponse.model_validate(result.unwrap()), "Lesson updated")


@router.delete("/{lesson_id}")
async def delete_lesson(
    lesson_id: UUID,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await content.delete_lesson(db, user.id, lesson_id)
    raise_result(result)
    return envelope({"id": lesson_id}, "Lesson deleted")


@router.get("/{lesson_id}/steps")
async def list_steps(
    lesson_id: UUID,
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    found = await content.get_lesson(db, lesson_id)
    raise_result(found)
    steps = await content.list_steps(db, lesson_id, include_inactive=include_inactive and not user.is_student)
    return envelope([StepResponse.model_validate(s) for s in steps])


@router.post("/{lesson_id}/steps", status_code=status.HTTP_201_CREATED)
async def create_step(
    lesson_id: UUID,
    payload: StepCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.create_step(db, user.id, lesson_id, payload.model_dump(exclude_none=True))
    raise_result(result)
    return envelope(StepResponse.model_validate(result.unwrap()), "Step created")


@router.put("/{lesson_id}/steps/reorder")
async def reorder_steps(
    lesson_id: UUID,
    payload: StepReorder,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.reorder_steps(db, user.id, lesson_id, payload.step_ids)
    raise_result(result)
    return envelope([StepResponse.model_validate(s) for s in result.unwrap()], "Steps reordered")


@router.get("/{lesson_id}/resolved")
async def resolved_lesson(
    lesson_id: UUID,
    student_id: UUID | None = Query(None, description="Preview as this student (teacher/admin)"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The lesson with the student's overrides merged in."""
    target = student_id or user.id
    if target != user.id and not await overrides.can_manage_overrides_for(db, user, target):
        raise_error(insufficient_permissions(
            "preview this student's lesson",
            user_id=str(user.id),
            origin="api.lessons.resolved",
            error_code="CANNOT_MANAGE_OVERRIDE",
        ).error)
    result = await overrides.resolve_lesson_for_student(db, target, lesson_id)
    raise_result(result)
    return envelope(result.unwrap())
