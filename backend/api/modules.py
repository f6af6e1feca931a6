"""Modules API

Catalog browsing, per-learner progress/resume/access views and module
authoring.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import raise_result
from core.responses import PageParams, envelope, page_params, paginated
from core.security import CurrentUser, get_current_user, require_admin, require_teacher_plus
from engines.content import ContentService
from engines.progress import ProgressService
from engines.unlock import UnlockService

router = APIRouter()
content = ContentService()
progress = ProgressService()
unlock = UnlockService()


class ModuleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    level_id: UUID | None = None
    difficulty: str = Field("beginner", pattern="^(beginner|intermediate|advanced)$")
    estimated_duration_min: int = Field(30, ge=0)
    order_index: int = Field(0, ge=0)
    extra_data: dict = Field(default_factory=dict)


class ModuleUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    level_id: UUID | None = None
    difficulty: str | None = Field(default=None, pattern="^(beginner|intermediate|advanced)$")
    estimated_duration_min: int | None = Field(default=None, ge=0)
    order_index: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    extra_data: dict | None = None


class ModuleResponse(BaseModel):
    id: UUID
    level_id: UUID | None
    title: str
    description: str | None
    difficulty: str
    estimated_duration_min: int | None
    order_index: int
    is_active: bool

    class Config:
        from_attributes = True


class LessonSummary(BaseModel):
    id: UUID
    title: str
    slug: str
    order_index: int
    estimated_time_min: int | None
    is_published: bool

    class Config:
        from_attributes = True


class PrerequisiteCreate(BaseModel):
    prerequisite_id: UUID


@router.get("")
async def list_modules(
    level_id: UUID | None = Query(None),
    include_inactive: bool = Query(False),
    paging: PageParams = Depends(page_params),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await content.list_modules(
        db,
        level_id=level_id,
        include_inactive=include_inactive and not user.is_student,
        offset=paging.offset,
        limit=paging.limit,
    )
    raise_result(result)
    modules, total = result.unwrap()
    return paginated(
        [ModuleResponse.model_validate(m) for m in modules],
        paging.page,
        paging.limit,
        total,
    )


@router.get("/unlocked")
async def unlocked_modules(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await unlock.get_unlocked_modules(db, user.id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/{module_id}")
async def get_module(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await content.get_module(db, module_id)
    raise_result(result)
    module = result.unwrap()
    data = ModuleResponse.model_validate(module).model_dump()
    data["lessons"] = [
        LessonSummary.model_validate(lesson) for lesson in module.lessons if lesson.is_active
    ]
    data["prerequisites"] = [p.prerequisite_id for p in module.prerequisites]
    return envelope(data)


@router.get("/{module_id}/lessons")
async def module_lessons(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    found = await content.get_module(db, module_id)
    raise_result(found)
    lessons = await content.list_lessons(db, module_id)
    return envelope([LessonSummary.model_validate(lesson) for lesson in lessons])


@router.get("/{module_id}/progress")
async def module_progress(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_module_progress_stats(db, user.id, module_id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/{module_id}/resume")
async def module_resume(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_resume_state(db, user.id, module_id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/{module_id}/access")
async def module_access(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await unlock.can_access_module(db, user.id, module_id)
    raise_result(result)
    return envelope(result.unwrap())


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_module(
    payload: ModuleCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.create_module(db, user.id, payload.model_dump())
    raise_result(result)
    return envelope(ModuleResponse.model_validate(result.unwrap()), "Module created")


@router.put("/{module_id}")
async def update_module(
    module_id: UUID,
    payload: ModuleUpdate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.update_module(db, user.id, module_id, payload.model_dump(exclude_unset=True))
    raise_result(result)
    return envelope(ModuleResponse.model_validate(result.unwrap()), "Module updated")


@router.delete("/{module_id}")
async def delete_module(
    module_id: UUID,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await content.delete_module(db, user.id, module_id)
    raise_result(result)
    return envelope({"id": module_id}, "Module deleted")


@router.post("/{module_id}/prerequisites", status_code=status.HTTP_201_CREATED)
async def add_module_prerequisite(
    module_id: UUID,
    payload: PrerequisiteCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.add_module_prerequisite(db, user.id, module_id, payload.prerequisite_id)
    raise_result(result)
    return envelope(
        {"module_id": module_id, "prerequisite_id": payload.prerequisite_id},
        "Prerequisite added",
    )


@router.delete("/{module_id}/prerequisites/{prerequisite_id}")
async def remove_module_prerequisite(
    module_id: UUID,
    prerequisite_id: UUID,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.remove_module_prerequisite(db, user.id, module_id, prerequisite_id)
    raise_result(result)
    return envelope(None, "Prerequisite removed")
