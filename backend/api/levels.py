"""Levels API

Browsing is open to any authenticated user; authoring needs TEACHER or
above, deletion needs ADMIN.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import raise_result
from core.responses import envelope
from core.security import CurrentUser, get_current_user, require_admin, require_teacher_plus
from engines.content import ContentService
from engines.unlock import UnlockService

router = APIRouter()
content = ContentService()
unlock = UnlockService()


class LevelCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    order_index: int = Field(ge=0)
    is_optional: bool = False


class LevelUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    order_index: int | None = Field(default=None, ge=0)
    is_optional: bool | None = None
    is_active: bool | None = None


class LevelResponse(BaseModel):
    id: UUID
    title: str
    description: str | None
    order_index: int
    is_optional: bool
    is_active: bool

    class Config:
        from_attributes = True


class PrerequisiteCreate(BaseModel):
    prerequisite_id: UUID


@router.get("")
async def list_levels(
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    levels = await content.list_levels(db, include_inactive=include_inactive and not user.is_student)
    return envelope([LevelResponse.model_validate(level) for level in levels])


@router.get("/unlock-status")
async def level_unlock_status(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Which levels the caller has unlocked and completed."""
    result = await unlock.get_level_unlock_status(db, user.id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/{level_id}")
async def get_level(
    level_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await content.get_level(db, level_id)
    raise_result(result)
    level = result.unwrap()
    modules = await content.list_modules(db, level_id=level_id, limit=1000)
    raise_result(modules)
    data = LevelResponse.model_validate(level).model_dump()
    data["modules"] = [
        {"id": m.id, "title": m.title, "order_index": m.order_index, "difficulty": m.difficulty}
        for m in modules.unwrap()[0]
    ]
    return envelope(data)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_level(
    payload: LevelCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.create_level(db, user.id, payload.model_dump())
    raise_result(result)
    return envelope(LevelResponse.model_validate(result.unwrap()), "Level created")


@router.put("/{level_id}")
async def update_level(
    level_id: UUID,
    payload: LevelUpdate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.update_level(db, user.id, level_id, payload.model_dump(exclude_unset=True))
    raise_result(result)
    return envelope(LevelResponse.model_validate(result.unwrap()), "Level updated")


@router.delete("/{level_id}")
async def delete_level(
    level_id: UUID,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await content.delete_level(db, user.id, level_id)
    raise_result(result)
    return envelope({"id": level_id}, "Level deleted")


@router.post("/{level_id}/prerequisites", status_code=status.HTTP_201_CREATED)
async def add_level_prerequisite(
    level_id: UUID,
    payload: PrerequisiteCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.add_level_prerequisite(db, user.id, level_id, payload.prerequisite_id)
    raise_result(result)
    return envelope(
        {"level_id": level_id, "prerequisite_level_id": payload.prerequisite_id},
        "Prerequisite added",
    )


@router.delete("/{level_id}/prerequisites/{prerequisite_id}")
async def remove_level_prerequisite(
    level_id: UUID,
    prerequisite_id: UUID,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await content.remove_level_prerequisite(db, user.id, level_id, prerequisite_id)
    raise_result(result)
    return envelope(None, "Prerequisite removed")
