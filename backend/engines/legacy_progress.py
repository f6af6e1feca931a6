"""Legacy progress table and its one-time reconciliation.

``Progress`` rows predate the split into UserProgress/LessonCompletion. The
old API still writes percentage-based progress through
``LegacyProgressService``; ``migrate_legacy_progress`` folds those rows into
the current tables. Running the migration twice changes nothing the second
time.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import commit_or_rollback, fetch_one, upsert, utcnow
from core.errors import AppError, Ok, Result, map_db_errors, validation_error
from core.logging import progress_logger
from engines.progress import floor_percent
from models.content import Lesson
from models.progress import LessonCompletion, Progress, ProgressStatus, UserProgress

log = progress_logger()


class LegacyProgressService:
    __slots__ = ()

    @map_db_errors("engine.legacy_progress")
    async def update_lesson_progress_by_percentage(
        self,
        session: AsyncSession,
        user_id: UUID,
        lesson_id: UUID,
        percentage: float,
        time_spent: int = 0,
        completed: bool | None = None,
    ) -> Result[Progress, AppError]:
        """Write a percentage-based progress row.

        The percentage is clamped to 0..100 and never completes the lesson on
        its own; only ``completed=True`` does.
        """
        if time_spent < 0:
            return validation_error(
                "timeSpent must be >= 0",
                field="time_spent", value=time_spent, origin="engine.legacy_progress",
            )
        found = await fetch_one(session, Lesson, lesson_id, "Lesson", active_only=True)
        if found.is_err():
            return found
        lesson = found.unwrap()

        percentage = max(0.0, min(100.0, float(percentage)))
        now = utcnow()
        is_completed = completed is True
        await upsert(
            session,
            Progress,
            {
                "id": uuid4(),
                "user_id": user_id,
                "module_id": lesson.module_id,
                "lesson_id": lesson_id,
                "completed": is_completed,
                "completion_percentage": percentage,
                "time_spent": time_spent,
                "last_access": now,
                "completed_at": now if is_completed else None,
                "created_at": now,
                "updated_at": now,
            },
            ["user_id", "lesson_id"],
            update={
                "module_id": lambda ex: ex.module_id,
                "completion_percentage": lambda ex: ex.completion_percentage,
                "completed": lambda ex: or_(Progress.completed, ex.completed),
                "completed_at": lambda ex: func.coalesce(Progress.completed_at, ex.completed_at),
                "time_spent": lambda ex: Progress.time_spent + ex.time_spent,
                "last_access": lambda ex: ex.last_access,
                "updated_at": now,
            },
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed

        result = await session.execute(
            select(Progress)
            .where(Progress.user_id == user_id, Progress.lesson_id == lesson_id)
            .execution_options(populate_existing=True)
        )
        return Ok(result.scalar_one())


@dataclass(slots=True)
class MigrationStats:
    old_progress_records: int = 0
    migrated_module_progress: int = 0
    migrated_lesson_progress: int = 0
    skipped_no_lesson: int = 0
    skipped_no_module: int = 0
    skipped_already_exists: int = 0
    errors: list[str] = field(default_factory=list)


def _build_module_progress(
    user_id: UUID, module_id: UUID, records: list[Progress], active_lessons: set[UUID]
) -> UserProgress:
    """Aggregate a module from legacy rows, judged against its active lessons."""
    completed_ids = {r.lesson_id for r in records if r.completed and r.lesson_id in active_lessons}
    total = len(active_lessons)
    is_complete = total > 0 and len(completed_ids) >= total
    accessed = [r for r in records if r.last_access is not None]
    latest = max(accessed, key=lambda r: r.last_access) if accessed else None

    if is_complete:
        status = ProgressStatus.COMPLETED
    elif any(r.completed or r.completion_percentage > 0 or r.time_spent > 0 for r in records):
        status = ProgressStatus.IN_PROGRESS
    else:
        status = ProgressStatus.NOT_STARTED

    completed_at = [r.completed_at for r in records if r.completed_at is not None]
    return UserProgress(
        id=uuid4(),
        user_id=user_id,
        module_id=module_id,
        status=status.value,
        is_module_completed=is_complete,
        completed_lessons_count=len(completed_ids),
        total_lessons=total,
        progress_percentage=floor_percent(len(completed_ids), total),
        time_spent=sum(r.time_spent or 0 for r in records),
        last_accessed_lesson_id=latest.lesson_id if latest else None,
        last_accessed_at=latest.last_access if latest else None,
        completed_at=max(completed_at) if is_complete and completed_at else None,
    )


def _build_lesson_completion(record: Progress) -> LessonCompletion:
    total_steps = max(1, record.total_steps or 1)
    return LessonCompletion(
        id=uuid4(),
        user_id=record.user_id,
        lesson_id=record.lesson_id,
        is_completed=record.completed,
        current_step_index=min(max(0, record.current_step or 0), total_steps - 1),
        total_steps=total_steps,
        time_spent=record.time_spent or 0,
        last_accessed=record.last_access,
        completed_at=record.completed_at if record.completed else None,
    )


async def migrate_legacy_progress(session: AsyncSession, dry_run: bool = False) -> MigrationStats:
    """Reconcile legacy ``Progress`` rows into UserProgress/LessonCompletion.

    Records are grouped per (user, module); the module comes from the row or,
    failing that, from its lesson. Existing UserProgress rows are left alone
    but still receive any lesson records they are missing. Per-group
    failures are collected in ``errors`` and do not abort the run.
    """
    stats = MigrationStats()

    rows = await session.execute(
        select(Progress, Lesson.module_id)
        .select_from(Progress)
        .outerjoin(Lesson, Lesson.id == Progress.lesson_id)
    )
    groups: dict[tuple[UUID, UUID], list[Progress]] = defaultdict(list)
    for record, lesson_module_id in rows.all():
        stats.old_progress_records += 1
        if record.lesson_id is None:
            stats.skipped_no_lesson += 1
        module_id = record.module_id or lesson_module_id
        if module_id is None:
            stats.skipped_no_module += 1
            continue
        groups[(record.user_id, module_id)].append(record)

    existing_modules = {
        (u, m) for u, m in (await session.execute(select(UserProgress.user_id, UserProgress.module_id))).all()
    }
    existing_lessons = {
        (u, l) for u, l in (await session.execute(select(LessonCompletion.user_id, LessonCompletion.lesson_id))).all()
    }
    active_lessons: dict[UUID, set[UUID]] = defaultdict(set)
    for lesson_module_id, lesson_id in (await session.execute(
        select(Lesson.module_id, Lesson.id).where(Lesson.is_active == True)
    )).all():
        active_lessons[lesson_module_id].add(lesson_id)

    log.info("legacy_migration_started", records=stats.old_progress_records,
             groups=len(groups), dry_run=dry_run)

    for (user_id, module_id), records in groups.items():
        new_rows = []
        if (user_id, module_id) in existing_modules:
            stats.skipped_already_exists += 1
        else:
            new_rows.append(_build_module_progress(user_id, module_id, records, active_lessons[module_id]))

        lesson_rows = [
            _build_lesson_completion(r)
            for r in records
            if r.lesson_id is not None and (user_id, r.lesson_id) not in existing_lessons
        ]

        if not dry_run and (new_rows or lesson_rows):
            try:
                async with session.begin_nested():
                    session.add_all(new_rows + lesson_rows)
            except SQLAlchemyError as e:
                stats.errors.append(f"user={user_id} module={module_id}: {e}")
                log.error("legacy_migration_group_failed", user_id=str(user_id),
                          module_id=str(module_id), error=str(e))
                continue

        stats.migrated_module_progress += len(new_rows)
        stats.migrated_lesson_progress += len(lesson_rows)
        existing_lessons.update((user_id, r.lesson_id) for r in lesson_rows)

    if not dry_run:
        committed = await commit_or_rollback(session)
        if committed.is_err():
            error = committed.unwrap_err()
            stats.errors.append(f"commit failed: {error.message}")
            stats.migrated_module_progress = 0
            stats.migrated_lesson_progress = 0

    log.info(
        "legacy_migration_finished",
        dry_run=dry_run,
        migrated_modules=stats.migrated_module_progress,
        migrated_lessons=stats.migrated_lesson_progress,
        skipped_existing=stats.skipped_already_exists,
        errors=len(stats.errors),
    )
    return stats
