"""Legacy percentage progress and its migration."""
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from core.database import utcnow
from engines.legacy_progress import LegacyProgressService, migrate_legacy_progress
from engines.unlock import UnlockService
from models.progress import LessonCompletion, Progress, ProgressStatus, UserProgress
from tests.conftest import add_module_prerequisite, build_curriculum

legacy = LegacyProgressService()
unlock = UnlockService()


async def add_legacy(session, user, lesson=None, module=None, **fields):
    session.add(Progress(
        id=uuid4(),
        user_id=user.id,
        lesson_id=lesson.id if lesson else None,
        module_id=module.id if module else None,
        last_access=utcnow(),
        **fields,
    ))
    await session.commit()


async def count(session, model) -> int:
    return await session.scalar(select(func.count(model.id)))


class TestPercentageProgress:
    @pytest.mark.asyncio
    async def test_percentage_is_clamped_and_never_completes(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        high = (await legacy.update_lesson_progress_by_percentage(db_session, student.id, lesson.id, 150)).unwrap()
        assert high.completion_percentage == 100.0
        assert high.completed is False

        low = (await legacy.update_lesson_progress_by_percentage(db_session, student.id, lesson.id, -5, 30)).unwrap()
        assert low.completion_percentage == 0.0
        assert low.time_spent == 30
        assert low.module_id == curriculum.modules[0].id

    @pytest.mark.asyncio
    async def test_explicit_completion_sticks(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        done = (await legacy.update_lesson_progress_by_percentage(
            db_session, student.id, lesson.id, 80, completed=True
        )).unwrap()
        later = (await legacy.update_lesson_progress_by_percentage(
            db_session, student.id, lesson.id, 40, completed=False
        )).unwrap()

        assert done.completed is True and done.completed_at is not None
        assert later.completed is True
        assert later.completed_at == done.completed_at

    @pytest.mark.asyncio
    async def test_negative_time_rejected(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        result = await legacy.update_lesson_progress_by_percentage(db_session, student.id, lesson.id, 10, -1)

        assert result.unwrap_err().code.http_status == 400

    @pytest.mark.asyncio
    async def test_inactive_lesson_rejected(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        lesson.is_active = False
        await db_session.commit()

        result = await legacy.update_lesson_progress_by_percentage(db_session, student.id, lesson.id, 10)

        assert result.unwrap_err().machine_code == "LESSON_NOT_FOUND"
        assert await count(db_session, Progress) == 0


class TestMigration:
    @pytest.mark.asyncio
    async def test_groups_per_user_and_module(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        first, second = curriculum.lessons[m11.id]
        await add_legacy(db_session, student, first, completed=True, completion_percentage=100.0,
                         time_spent=120, current_step=2, total_steps=3, completed_at=utcnow())
        await add_legacy(db_session, student, second, completion_percentage=50.0, time_spent=60,
                         current_step=7, total_steps=3)

        stats = await migrate_legacy_progress(db_session)

        assert stats.old_progress_records == 2
        assert stats.migrated_module_progress == 1
        assert stats.migrated_lesson_progress == 2
        assert stats.errors == []

        module = (await db_session.execute(select(UserProgress))).scalar_one()
        assert module.module_id == m11.id
        assert module.status == ProgressStatus.IN_PROGRESS.value
        assert module.completed_lessons_count == 1
        assert module.total_lessons == 2
        assert module.progress_percentage == 50
        assert module.time_spent == 180

        lessons = {r.lesson_id: r for r in (await db_session.execute(select(LessonCompletion))).scalars()}
        assert lessons[first.id].is_completed is True
        assert lessons[second.id].current_step_index == 2

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        await add_legacy(db_session, student, lesson, completion_percentage=10.0)
        await migrate_legacy_progress(db_session)

        again = await migrate_legacy_progress(db_session)

        assert again.skipped_already_exists == 1
        assert again.migrated_module_progress == 0
        assert again.migrated_lesson_progress == 0
        assert await count(db_session, LessonCompletion) == 1

    @pytest.mark.asyncio
    async def test_orphan_rows_are_skipped(self, db_session, student):
        await add_legacy(db_session, student)

        stats = await migrate_legacy_progress(db_session)

        assert stats.skipped_no_lesson == 1
        assert stats.skipped_no_module == 1
        assert stats.migrated_module_progress == 0

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session, curriculum, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        await add_legacy(db_session, student, lesson, completed=True, completion_percentage=100.0)

        stats = await migrate_legacy_progress(db_session, dry_run=True)

        assert stats.migrated_module_progress == 1
        assert stats.migrated_lesson_progress == 1
        assert await count(db_session, UserProgress) == 0
        assert await count(db_session, LessonCompletion) == 0

    @pytest.mark.asyncio
    async def test_partial_module_stays_in_progress_and_locked(self, db_session, student):
        tree = await build_curriculum(db_session, [[3, 1]])
        first, second = tree.modules
        await add_module_prerequisite(db_session, second, first)
        await add_legacy(db_session, student, tree.lessons[first.id][0], completed=True,
                         completion_percentage=100.0, completed_at=utcnow())

        await migrate_legacy_progress(db_session)

        module = (await db_session.execute(select(UserProgress))).scalar_one()
        assert module.status == ProgressStatus.IN_PROGRESS.value
        assert module.is_module_completed is False
        assert module.completed_lessons_count == 1
        assert module.total_lessons == 3
        assert module.progress_percentage == 33
        assert module.completed_at is None
        decision = (await unlock.can_access_module(db_session, student.id, second.id)).unwrap()
        assert decision.can_access is False

    @pytest.mark.asyncio
    async def test_every_active_lesson_completed_finishes_module(self, db_session, student):
        tree = await build_curriculum(db_session, [[2, 1]])
        first, second = tree.modules
        await add_module_prerequisite(db_session, second, first)
        for lesson in tree.lessons[first.id]:
            await add_legacy(db_session, student, lesson, completed=True,
                             completion_percentage=100.0, completed_at=utcnow())

        await migrate_legacy_progress(db_session)

        module = (await db_session.execute(select(UserProgress))).scalar_one()
        assert module.status == ProgressStatus.COMPLETED.value
        assert module.progress_percentage == 100
        assert module.completed_at is not None
        decision = (await unlock.can_access_module(db_session, student.id, second.id)).unwrap()
        assert decision.can_access is True

    @pytest.mark.asyncio
    async def test_inactive_lessons_do_not_count(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        done, retired = curriculum.lessons[m11.id]
        await add_legacy(db_session, student, done, completed=True, completion_percentage=100.0)
        await add_legacy(db_session, student, retired, completed=True, completion_percentage=100.0)
        retired.is_active = False
        await db_session.commit()

        await migrate_legacy_progress(db_session)

        module = (await db_session.execute(select(UserProgress))).scalar_one()
        assert module.total_lessons == 1
        assert module.completed_lessons_count == 1
        assert module.status == ProgressStatus.COMPLETED.value
