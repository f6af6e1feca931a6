"""Progress Engine

Records learner progress per lesson (``LessonCompletion``) and keeps the
per-module aggregate (``UserProgress``) in step with it.

Writes are single-statement upserts on the (user, lesson) and
(user, module) unique indices, so concurrent requests for the same learner
converge without in-process locking:
- time spent is accumulated with SQL increments
- ``is_completed`` is OR-ed and never downgraded
- ``completed_at`` is stamped only the first time
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import commit_or_rollback, fetch_one, upsert, utcnow
from core.errors import (
    AppError,
    Ok,
    Result,
    map_db_errors,
    not_found,
    validation_error,
)
from core.logging import progress_logger
from models.content import Lesson, Level, Module, Step
from models.progress import LessonCompletion, ProgressStatus, UserProgress

log = progress_logger()

XP_PER_LESSON = 100
XP_PER_LEVEL = 500
NO_LEVEL = "__no_level__"
MAX_PARTIAL_PROGRESS = 0.99


def floor_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(100, math.floor(completed / total * 100)))


def lesson_progress_value(record: LessonCompletion | None) -> float:
    """0..1 progress through a lesson; only a completed lesson reaches 1."""
    if record is None:
        return 0.0
    if record.is_completed:
        return 1.0
    total = max(1, record.total_steps or 1)
    return min(MAX_PARTIAL_PROGRESS, (record.current_step_index + 1) / total)


@dataclass(slots=True)
class LessonOverview:
    lesson_id: UUID
    title: str
    order: int
    completed: bool
    progress: float
    xp_earned: int
    last_visited_at: datetime | None


@dataclass(slots=True)
class ModuleOverview:
    module_id: UUID
    title: str
    level_id: UUID | None
    order: int
    total_pages: int
    completed_pages: int
    percent_complete: int
    is_available: bool
    lessons: list[LessonOverview] = field(default_factory=list)


@dataclass(slots=True)
class OverviewStats:
    completed_lessons: int
    total_lessons: int
    modules_completed: int
    total_modules: int
    xp_total: int
    level: int
    next_level_xp: int


@dataclass(slots=True)
class ProgressOverview:
    modules: list[ModuleOverview]
    stats: OverviewStats


@dataclass(slots=True)
class ResumeState:
    module_id: UUID
    lesson_id: UUID
    lesson_title: str
    current_step_index: int
    total_steps: int
    is_module_complete: bool
    module_progress: int
    completed_lessons: int
    total_lessons: int
    last_accessed_at: datetime | None


@dataclass(slots=True)
class StepProgress:
    lesson_id: UUID
    module_id: UUID
    current_step_index: int
    total_steps: int
    is_completed: bool
    percent: int


@dataclass(slots=True)
class LessonProgressView:
    lesson_id: UUID
    is_completed: bool
    current_step_index: int
    total_steps: int
    time_spent: int
    progress: float
    last_accessed: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class ModuleProgressStats:
    module_id: UUID
    total_lessons: int
    completed_lessons: int
    module_progress: int
    last_accessed_lesson: LessonProgressView | None
    next_incomplete_lesson: UUID | None
    lessons: list[LessonProgressView]


def compute_overview(
    rows: list[tuple[Module, Lesson | None]],
    completions: dict[UUID, LessonCompletion],
) -> ProgressOverview:
    """Aggregate ordered (module, lesson) rows into the dashboard overview.

    ``rows`` must be ordered by (level order, module order, lesson order).
    A module is available when it is the first of its level, or when the
    previous module of the same level has every lesson completed.
    """
    modules: dict[UUID, ModuleOverview] = {}
    for module, lesson in rows:
        overview = modules.get(module.id)
        if overview is None:
            overview = modules[module.id] = ModuleOverview(
                module_id=module.id,
                title=module.title,
                level_id=module.level_id,
                order=module.order_index,
                total_pages=0,
                completed_pages=0,
                percent_complete=0,
                is_available=False,
            )
        if lesson is None:
            continue
        record = completions.get(lesson.id)
        completed = bool(record and record.is_completed)
        overview.total_pages += 1
        overview.completed_pages += int(completed)
        overview.lessons.append(LessonOverview(
            lesson_id=lesson.id,
            title=lesson.title,
            order=lesson.order_index,
            completed=completed,
            progress=lesson_progress_value(record),
            xp_earned=XP_PER_LESSON if completed else 0,
            last_visited_at=record.last_accessed if record else None,
        ))

    previous_by_level: dict[object, ModuleOverview] = {}
    for overview in modules.values():
        overview.percent_complete = floor_percent(overview.completed_pages, overview.total_pages)
        key = overview.level_id or NO_LEVEL
        previous = previous_by_level.get(key)
        overview.is_available = previous is None or (
            previous.total_pages > 0 and previous.completed_pages == previous.total_pages
        )
        previous_by_level[key] = overview

    ordered = list(modules.values())
    completed_lessons = sum(m.completed_pages for m in ordered)
    xp_total = completed_lessons * XP_PER_LESSON
    level = xp_total // XP_PER_LEVEL + 1
    stats = OverviewStats(
        completed_lessons=completed_lessons,
        total_lessons=sum(m.total_pages for m in ordered),
        modules_completed=sum(
            1 for m in ordered if m.total_pages > 0 and m.completed_pages == m.total_pages
        ),
        total_modules=len(ordered),
        xp_total=xp_total,
        level=level,
        next_level_xp=level * XP_PER_LEVEL,
    )
    return ProgressOverview(modules=ordered, stats=stats)


class ProgressService:
    """Reads and writes learner progress."""

    __slots__ = ()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @map_db_errors("engine.progress")
    async def get_progress_overview(
        self,
        session: AsyncSession,
        user_id: UUID,
        level_id: UUID | None = None,
        module_id: UUID | None = None,
    ) -> Result[ProgressOverview, AppError]:
        """Dashboard view in two queries: content tree, then the user's records."""
        query = (
            select(Module, Lesson)
            .select_from(Module)
            .outerjoin(Level, Module.level_id == Level.id)
            .outerjoin(Lesson, (Lesson.module_id == Module.id) & (Lesson.is_active == True))
            .where(Module.is_active == True)
            .order_by(Level.order_index, Module.order_index, Lesson.order_index)
        )
        if level_id is not None:
            query = query.where(Module.level_id == level_id)
        rows = (await session.execute(query)).all()

        records = await session.execute(
            select(LessonCompletion).where(LessonCompletion.user_id == user_id)
        )
        completions = {r.lesson_id: r for r in records.scalars().all()}

        overview = compute_overview([(m, l) for m, l in rows], completions)
        if module_id is not None:
            overview.modules = [m for m in overview.modules if m.module_id == module_id]
        return Ok(overview)

    async def _active_lessons(self, session: AsyncSession, module_id: UUID) -> list[Lesson]:
        result = await session.execute(
            select(Lesson)
            .where(Lesson.module_id == module_id, Lesson.is_active == True)
            .order_by(Lesson.order_index)
        )
        return list(result.scalars().all())

    async def _records_for(
        self, session: AsyncSession, user_id: UUID, lesson_ids: list[UUID]
    ) -> dict[UUID, LessonCompletion]:
        if not lesson_ids:
            return {}
        result = await session.execute(
            select(LessonCompletion)
            .where(LessonCompletion.user_id == user_id, LessonCompletion.lesson_id.in_(lesson_ids))
            .execution_options(populate_existing=True)
        )
        return {r.lesson_id: r for r in result.scalars().all()}

    async def _active_step_count(self, session: AsyncSession, lesson_id: UUID) -> int:
        count = await session.scalar(
            select(func.count(Step.id)).where(Step.lesson_id == lesson_id, Step.is_active == True)
        )
        return max(1, count or 0)

    @map_db_errors("engine.progress")
    async def get_resume_state(
        self, session: AsyncSession, user_id: UUID, module_id: UUID
    ) -> Result[ResumeState, AppError]:
        found = await fetch_one(session, Module, module_id, "Module")
        if found.is_err():
            return found
        lessons = await self._active_lessons(session, module_id)
        if not lessons:
            return validation_error(
                "Module has no active lessons",
                field="module_id",
                value=str(module_id),
                error_code="MODULE_HAS_NO_LESSONS",
                origin="engine.progress",
            )
        records = await self._records_for(session, user_id, [l.id for l in lessons])
        completed = sum(1 for r in records.values() if r.is_completed)

        target = next((l for l in lessons if not (records.get(l.id) and records[l.id].is_completed)), None)
        is_module_complete = target is None
        target = target or lessons[-1]
        record = records.get(target.id)

        if record is not None and record.total_steps:
            total_steps = max(1, record.total_steps)
        else:
            total_steps = await self._active_step_count(session, target.id)

        accessed = [r.last_accessed for r in records.values() if r.last_accessed]
        return Ok(ResumeState(
            module_id=module_id,
            lesson_id=target.id,
            lesson_title=target.title,
            current_step_index=record.current_step_index if record else 0,
            total_steps=total_steps,
            is_module_complete=is_module_complete,
            module_progress=floor_percent(completed, len(lessons)),
            completed_lessons=completed,
            total_lessons=len(lessons),
            last_accessed_at=max(accessed) if accessed else None,
        ))

    def _view(self, lesson_id: UUID, record: LessonCompletion | None, total_steps: int = 1) -> LessonProgressView:
        if record is None:
            return LessonProgressView(
                lesson_id=lesson_id,
                is_completed=False,
                current_step_index=0,
                total_steps=total_steps,
                time_spent=0,
                progress=0.0,
                last_accessed=None,
                completed_at=None,
            )
        return LessonProgressView(
            lesson_id=lesson_id,
            is_completed=record.is_completed,
            current_step_index=record.current_step_index,
            total_steps=record.total_steps,
            time_spent=record.time_spent,
            progress=lesson_progress_value(record),
            last_accessed=record.last_accessed,
            completed_at=record.completed_at,
        )

    @map_db_errors("engine.progress")
    async def get_lesson_progress(
        self, session: AsyncSession, user_id: UUID, lesson_id: UUID
    ) -> Result[LessonProgressView, AppError]:
        found = await fetch_one(session, Lesson, lesson_id, "Lesson")
        if found.is_err():
            return found
        record = (await self._records_for(session, user_id, [lesson_id])).get(lesson_id)
        if record is None:
            return Ok(self._view(lesson_id, None, await self._active_step_count(session, lesson_id)))
        return Ok(self._view(lesson_id, record))

    @map_db_errors("engine.progress")
    async def get_module_progress_stats(
        self, session: AsyncSession, user_id: UUID, module_id: UUID
    ) -> Result[ModuleProgressStats, AppError]:
        found = await fetch_one(session, Module, module_id, "Module")
        if found.is_err():
            return found
        lessons = await self._active_lessons(session, module_id)
        records = await self._records_for(session, user_id, [l.id for l in lessons])

        views = [self._view(l.id, records.get(l.id)) for l in lessons]
        completed = sum(1 for v in views if v.is_completed)
        visited = [v for v in views if v.last_accessed is not None]
        return Ok(ModuleProgressStats(
            module_id=module_id,
            total_lessons=len(lessons),
            completed_lessons=completed,
            module_progress=floor_percent(completed, len(lessons)),
            last_accessed_lesson=max(visited, key=lambda v: v.last_accessed) if visited else None,
            next_incomplete_lesson=next((v.lesson_id for v in views if not v.is_completed), None),
            lessons=views,
        ))

    @map_db_errors("engine.progress")
    async def get_next_lesson(
        self, session: AsyncSession, user_id: UUID, lesson_id: UUID
    ) -> Result[Lesson | None, AppError]:
        found = await fetch_one(session, Lesson, lesson_id, "Lesson")
        if found.is_err():
            return found
        lesson = found.unwrap()
        result = await session.execute(
            select(Lesson)
            .where(
                Lesson.module_id == lesson.module_id,
                Lesson.is_active == True,
                Lesson.order_index > lesson.order_index,
            )
            .order_by(Lesson.order_index)
            .limit(1)
        )
        return Ok(result.scalar_one_or_none())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _touch_module(
        self,
        session: AsyncSession,
        user_id: UUID,
        module_id: UUID,
        lesson_id: UUID,
        time_spent: int,
        now: datetime,
    ) -> None:
        """Mark the module started and record the last-accessed lesson."""
        await upsert(
            session,
            UserProgress,
            {
                "id": uuid4(),
                "user_id": user_id,
                "module_id": module_id,
                "status": ProgressStatus.IN_PROGRESS.value,
                "time_spent": time_spent,
                "last_accessed_lesson_id": lesson_id,
                "last_accessed_at": now,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "module_id"],
            update={
                "status": lambda ex: case(
                    (UserProgress.status == ProgressStatus.COMPLETED.value, UserProgress.status),
                    else_=ex.status,
                ),
                "time_spent": lambda ex: UserProgress.time_spent + ex.time_spent,
                "last_accessed_lesson_id": lambda ex: ex.last_accessed_lesson_id,
                "last_accessed_at": lambda ex: ex.last_accessed_at,
                "updated_at": now,
            },
        )

    @map_db_errors("engine.progress")
    async def update_step_progress(
        self,
        session: AsyncSession,
        user_id: UUID,
        module_id: UUID,
        lesson_id: UUID,
        current_step_index: int,
        total_steps: int,
        time_spent_delta: int = 0,
    ) -> Result[StepProgress, AppError]:
        """Record the learner's position inside a lesson.

        Replaying the same call leaves the stored state unchanged apart from
        accumulated time.
        """
        if current_step_index < 0:
            return validation_error(
                "currentStepIndex must be >= 0",
                field="current_step_index", value=current_step_index, origin="engine.progress",
            )
        if total_steps < 1:
            return validation_error(
                "totalSteps must be >= 1",
                field="total_steps", value=total_steps, origin="engine.progress",
            )
        if time_spent_delta < 0:
            return validation_error(
                "timeSpentDelta must be >= 0",
                field="time_spent_delta", value=time_spent_delta, origin="engine.progress",
            )

        found = await fetch_one(session, Lesson, lesson_id, "Lesson", active_only=True)
        if found.is_err():
            return found
        lesson = found.unwrap()
        if lesson.module_id != module_id:
            return validation_error(
                "Lesson does not belong to module",
                field="module_id", value=str(module_id),
                error_code="LESSON_MODULE_MISMATCH", origin="engine.progress",
            )

        step = min(current_step_index, total_steps - 1)
        now = utcnow()
        await self._touch_module(session, user_id, module_id, lesson_id, time_spent_delta, now)
        await upsert(
            session,
            LessonCompletion,
            {
                "id": uuid4(),
                "user_id": user_id,
                "lesson_id": lesson_id,
                "is_completed": False,
                "current_step_index": step,
                "total_steps": total_steps,
                "time_spent": time_spent_delta,
                "last_accessed": now,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "lesson_id"],
            update={
                "current_step_index": lambda ex: ex.current_step_index,
                "total_steps": lambda ex: ex.total_steps,
                "time_spent": lambda ex: LessonCompletion.time_spent + ex.time_spent,
                "last_accessed": lambda ex: ex.last_accessed,
                "updated_at": now,
            },
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed

        record = (await self._records_for(session, user_id, [lesson_id]))[lesson_id]
        log.debug("step_progress_updated", user_id=str(user_id), lesson_id=str(lesson_id), step=step)
        return Ok(StepProgress(
            lesson_id=lesson_id,
            module_id=module_id,
            current_step_index=record.current_step_index,
            total_steps=record.total_steps,
            is_completed=record.is_completed,
            percent=100 if record.is_completed else floor_percent(record.current_step_index + 1, record.total_steps),
        ))

    @map_db_errors("engine.progress")
    async def update_lesson_progress(
        self,
        session: AsyncSession,
        user_id: UUID,
        lesson_id: UUID,
        completed: bool = False,
        time_spent: int = 0,
    ) -> Result[LessonProgressView, AppError]:
        if time_spent < 0:
            return validation_error(
                "timeSpent must be >= 0",
                field="time_spent", value=time_spent, origin="engine.progress",
            )
        found = await fetch_one(session, Lesson, lesson_id, "Lesson", active_only=True)
        if found.is_err():
            return found
        lesson = found.unwrap()

        now = utcnow()
        await upsert(
            session,
            LessonCompletion,
            {
                "id": uuid4(),
                "user_id": user_id,
                "lesson_id": lesson_id,
                "is_completed": completed,
                "current_step_index": 0,
                "total_steps": await self._active_step_count(session, lesson_id),
                "time_spent": time_spent,
                "last_accessed": now,
                "completed_at": now if completed else None,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "lesson_id"],
            update={
                "is_completed": lambda ex: or_(LessonCompletion.is_completed, ex.is_completed),
                "completed_at": lambda ex: func.coalesce(LessonCompletion.completed_at, ex.completed_at),
                "time_spent": lambda ex: LessonCompletion.time_spent + ex.time_spent,
                "last_accessed": lambda ex: ex.last_accessed,
                "updated_at": now,
            },
        )
        await self._touch_module(session, user_id, lesson.module_id, lesson_id, time_spent, now)
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed

        if completed:
            recalculated = await self.recalculate_module_progress(session, user_id, lesson.module_id)
            if recalculated.is_err():
                return recalculated
        record = (await self._records_for(session, user_id, [lesson_id]))[lesson_id]
        return Ok(self._view(lesson_id, record))

    @map_db_errors("engine.progress")
    async def mark_lesson_complete(
        self, session: AsyncSession, user_id: UUID, lesson_id: UUID
    ) -> Result[LessonProgressView, AppError]:
        """Complete a lesson and refresh the module aggregate. Idempotent."""
        found = await fetch_one(session, Lesson, lesson_id, "Lesson", active_only=True)
        if found.is_err():
            return found
        lesson = found.unwrap()

        existing = (await self._records_for(session, user_id, [lesson_id])).get(lesson_id)
        if existing is not None and existing.total_steps:
            total_steps = max(1, existing.total_steps)
        else:
            total_steps = await self._active_step_count(session, lesson_id)

        now = utcnow()
        await upsert(
            session,
            LessonCompletion,
            {
                "id": uuid4(),
                "user_id": user_id,
                "lesson_id": lesson_id,
                "is_completed": True,
                "current_step_index": total_steps - 1,
                "total_steps": total_steps,
                "time_spent": 0,
                "last_accessed": now,
                "completed_at": now,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "lesson_id"],
            update={
                "is_completed": True,
                "current_step_index": lambda ex: ex.current_step_index,
                "total_steps": lambda ex: ex.total_steps,
                "completed_at": lambda ex: func.coalesce(LessonCompletion.completed_at, ex.completed_at),
                "last_accessed": lambda ex: ex.last_accessed,
                "updated_at": now,
            },
        )
        await self._touch_module(session, user_id, lesson.module_id, lesson_id, 0, now)
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed

        recalculated = await self.recalculate_module_progress(session, user_id, lesson.module_id)
        if recalculated.is_err():
            return recalculated
        record = (await self._records_for(session, user_id, [lesson_id]))[lesson_id]
        log.info("lesson_completed", user_id=str(user_id), lesson_id=str(lesson_id))
        return Ok(self._view(lesson_id, record))

    @map_db_errors("engine.progress")
    async def recalculate_module_progress(
        self, session: AsyncSession, user_id: UUID, module_id: UUID
    ) -> Result[UserProgress, AppError]:
        """Recompute the module aggregate from the user's lesson records."""
        total = await session.scalar(
            select(func.count(Lesson.id)).where(Lesson.module_id == module_id, Lesson.is_active == True)
        ) or 0
        started, completed = (await session.execute(
            select(
                func.count(LessonCompletion.id),
                func.coalesce(func.sum(case((LessonCompletion.is_completed == True, 1), else_=0)), 0),
            )
            .join(Lesson, Lesson.id == LessonCompletion.lesson_id)
            .where(
                LessonCompletion.user_id == user_id,
                Lesson.module_id == module_id,
                Lesson.is_active == True,
            )
        )).one()
        completed = min(int(completed or 0), total)

        is_complete = total > 0 and completed == total
        if is_complete:
            status = ProgressStatus.COMPLETED
        elif completed > 0 or started > 0:
            status = ProgressStatus.IN_PROGRESS
        else:
            status = ProgressStatus.NOT_STARTED

        now = utcnow()
        await upsert(
            session,
            UserProgress,
            {
                "id": uuid4(),
                "user_id": user_id,
                "module_id": module_id,
                "status": status.value,
                "is_module_completed": is_complete,
                "completed_lessons_count": completed,
                "total_lessons": total,
                "progress_percentage": floor_percent(completed, total),
                "completed_at": now if is_complete else None,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "module_id"],
            update={
                "status": lambda ex: ex.status,
                "is_module_completed": lambda ex: ex.is_module_completed,
                "completed_lessons_count": lambda ex: ex.completed_lessons_count,
                "total_lessons": lambda ex: ex.total_lessons,
                "progress_percentage": lambda ex: ex.progress_percentage,
                "completed_at": (
                    (lambda ex: func.coalesce(UserProgress.completed_at, ex.completed_at))
                    if is_complete else None
                ),
                "updated_at": now,
            },
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed

        result = await session.execute(
            select(UserProgress)
            .where(UserProgress.user_id == user_id, UserProgress.module_id == module_id)
            .execution_options(populate_existing=True)
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            return not_found("UserProgress", module_id, origin="engine.progress")
        if is_complete:
            log.info("module_completed", user_id=str(user_id), module_id=str(module_id))
        return Ok(progress)
