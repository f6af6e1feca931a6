"""Per-student content overrides API (teacher for assigned students, admin for all)."""
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import raise_result
from core.responses import envelope
from core.security import CurrentUser, require_teacher_plus
from engines.overrides import OverrideService
from models.audit import OverrideEntityType

router = APIRouter()
overrides = OverrideService()


class OverrideCreate(BaseModel):
    student_id: UUID
    entity_type: OverrideEntityType
    entity_id: UUID
    override_data: dict[str, Any]


class OverrideUpdate(BaseModel):
    override_data: dict[str, Any] | None = None
    is_active: bool | None = None


class OverrideResponse(BaseModel):
    id: UUID
    student_id: UUID
    entity_type: str
    entity_id: UUID
    override_data: dict[str, Any]
    created_by: UUID | None
    is_active: bool

    class Config:
        from_attributes = True


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_override(
    payload: OverrideCreate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await overrides.create_override(
        db, user, payload.student_id, payload.entity_type, payload.entity_id, payload.override_data
    )
    raise_result(result)
    return envelope(OverrideResponse.model_validate(result.unwrap()), "Override created")


@router.get("/student/{student_id}")
async def student_overrides(
    student_id: UUID,
    entity_type: OverrideEntityType | None = Query(None),
    include_inactive: bool = Query(False),
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await overrides.list_for_student(
        db, user, student_id, entity_type=entity_type, include_inactive=include_inactive
    )
    raise_result(result)
    return envelope([OverrideResponse.model_validate(o) for o in result.unwrap()])


@router.get("/{override_id}")
async def get_override(
    override_id: UUID,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await overrides.get_override(db, user, override_id)
    raise_result(result)
    return envelope(OverrideResponse.model_validate(result.unwrap()))


@router.put("/{override_id}")
async def update_override(
    override_id: UUID,
    payload: OverrideUpdate,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await overrides.update_override(
        db, user, override_id, override_data=payload.override_data, is_active=payload.is_active
    )
    raise_result(result)
    return envelope(OverrideResponse.model_validate(result.unwrap()), "Override updated")


@router.delete("/{override_id}")
async def delete_override(
    override_id: UUID,
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await overrides.delete_override(db, user, override_id)
    raise_result(result)
    return envelope({"id": override_id}, "Override deleted")
