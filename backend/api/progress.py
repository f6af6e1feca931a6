"""Progress API

All endpoints act on the authenticated learner's own progress.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import raise_result
from core.responses import envelope
from core.security import CurrentUser, get_current_user
from engines.progress import ProgressService

router = APIRouter()
progress = ProgressService()


class LessonProgressUpdate(BaseModel):
    completed: bool = False
    time_spent: int = Field(0, ge=0)


class StepProgressUpdate(BaseModel):
    module_id: UUID
    lesson_id: UUID
    current_step_index: int
    total_steps: int
    time_spent_delta: int = 0


@router.get("/overview")
async def overview(
    level_id: UUID | None = Query(None),
    module_id: UUID | None = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_progress_overview(db, user.id, level_id=level_id, module_id=module_id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/module/{module_id}")
async def module_progress(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_module_progress_stats(db, user.id, module_id)
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/lesson/{lesson_id}")
async def lesson_progress(
    lesson_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_lesson_progress(db, user.id, lesson_id)
    raise_result(result)
    next_lesson = await progress.get_next_lesson(db, user.id, lesson_id)
    raise_result(next_lesson)
    following = next_lesson.unwrap()
    return envelope({
        "progress": result.unwrap(),
        "next_lesson": {"id": following.id, "title": following.title} if following else None,
    })


@router.put("/lesson/{lesson_id}")
async def update_lesson_progress(
    lesson_id: UUID,
    payload: LessonProgressUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.update_lesson_progress(
        db, user.id, lesson_id, completed=payload.completed, time_spent=payload.time_spent
    )
    raise_result(result)
    return envelope(result.unwrap(), "Progress updated")


@router.post("/lesson/{lesson_id}/complete")
async def complete_lesson(
    lesson_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.mark_lesson_complete(db, user.id, lesson_id)
    raise_result(result)
    return envelope(result.unwrap(), "Lesson completed")


@router.post("/step/update")
async def update_step(
    payload: StepProgressUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Record the current step; range checks return 400 from the service."""
    result = await progress.update_step_progress(
        db,
        user.id,
        payload.module_id,
        payload.lesson_id,
        payload.current_step_index,
        payload.total_steps,
        payload.time_spent_delta,
    )
    raise_result(result)
    return envelope(result.unwrap(), "Step progress saved")


@router.get("/resume/{module_id}")
async def resume(
    module_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress.get_resume_state(db, user.id, module_id)
    raise_result(result)
    return envelope(result.unwrap())
