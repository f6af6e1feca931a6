"""Progress store and aggregation."""
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from engines.progress import (
    MAX_PARTIAL_PROGRESS,
    ProgressService,
    compute_overview,
    floor_percent,
    lesson_progress_value,
)
from models.content import Lesson, Module
from models.progress import LessonCompletion, ProgressStatus, UserProgress
from tests.conftest import build_curriculum

progress = ProgressService()


async def _module_progress(session, user_id, module_id) -> UserProgress:
    result = await session.execute(
        select(UserProgress)
        .where(UserProgress.user_id == user_id, UserProgress.module_id == module_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestPureHelpers:
    def test_floor_percent_rounds_down(self):
        assert floor_percent(1, 3) == 33
        assert floor_percent(2, 3) == 66
        assert floor_percent(3, 3) == 100
        assert floor_percent(0, 0) == 0

    def test_partial_lesson_never_reaches_one(self):
        record = LessonCompletion(is_completed=False, current_step_index=2, total_steps=3)
        assert lesson_progress_value(record) == MAX_PARTIAL_PROGRESS
        assert lesson_progress_value(None) == 0.0
        assert lesson_progress_value(LessonCompletion(is_completed=True, current_step_index=0, total_steps=3)) == 1.0

    def test_compute_overview_availability_and_xp(self):
        level_id = uuid4()
        first = Module(id=uuid4(), level_id=level_id, title="A", order_index=0)
        second = Module(id=uuid4(), level_id=level_id, title="B", order_index=1)
        empty = Module(id=uuid4(), level_id=None, title="Sin nivel", order_index=0)
        a1 = Lesson(id=uuid4(), module_id=first.id, title="a1", order_index=0)
        a2 = Lesson(id=uuid4(), module_id=first.id, title="a2", order_index=1)
        b1 = Lesson(id=uuid4(), module_id=second.id, title="b1", order_index=0)
        rows = [(first, a1), (first, a2), (second, b1), (empty, None)]

        done = {
            a1.id: LessonCompletion(lesson_id=a1.id, is_completed=True, current_step_index=0, total_steps=1),
            a2.id: LessonCompletion(lesson_id=a2.id, is_completed=True, current_step_index=0, total_steps=1),
        }
        overview = compute_overview(rows, done)

        by_id = {m.module_id: m for m in overview.modules}
        assert by_id[first.id].percent_complete == 100
        assert by_id[second.id].is_available is True
        assert by_id[empty.id].total_pages == 0
        assert by_id[empty.id].is_available is True
        assert overview.stats.completed_lessons == 2
        assert overview.stats.xp_total == 200
        assert overview.stats.modules_completed == 1
        assert overview.stats.level == 1
        assert overview.stats.next_level_xp == 500

    def test_next_module_locked_until_previous_complete(self):
        level_id = uuid4()
        first = Module(id=uuid4(), level_id=level_id, title="A", order_index=0)
        second = Module(id=uuid4(), level_id=level_id, title="B", order_index=1)
        a1 = Lesson(id=uuid4(), module_id=first.id, title="a1", order_index=0)
        b1 = Lesson(id=uuid4(), module_id=second.id, title="b1", order_index=0)

        overview = compute_overview([(first, a1), (second, b1)], {})

        assert [m.is_available for m in overview.modules] == [True, False]


class TestOverview:
    @pytest.mark.asyncio
    async def test_overview_reflects_completions(self, db_session, curriculum, student):
        m11, m12, m21 = curriculum.modules
        first_lesson = curriculum.lessons[m11.id][0]
        await progress.mark_lesson_complete(db_session, student.id, first_lesson.id)

        result = await progress.get_progress_overview(db_session, student.id)

        overview = result.unwrap()
        by_id = {m.module_id: m for m in overview.modules}
        assert [m.module_id for m in overview.modules] == [m11.id, m12.id, m21.id]
        assert by_id[m11.id].completed_pages == 1
        assert by_id[m11.id].percent_complete == 50
        assert by_id[m12.id].is_available is False
        assert by_id[m21.id].is_available is True
        assert overview.stats.completed_lessons == 1
        assert overview.stats.total_lessons == 5
        assert overview.stats.xp_total == 100

    @pytest.mark.asyncio
    async def test_overview_filters(self, db_session, curriculum, student):
        m11, _, m21 = curriculum.modules

        by_level = (await progress.get_progress_overview(
            db_session, student.id, level_id=curriculum.levels[1].id
        )).unwrap()
        by_module = (await progress.get_progress_overview(
            db_session, student.id, module_id=m11.id
        )).unwrap()

        assert [m.module_id for m in by_level.modules] == [m21.id]
        assert [m.module_id for m in by_module.modules] == [m11.id]

    @pytest.mark.asyncio
    async def test_inactive_lessons_are_not_counted(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        curriculum.lessons[m11.id][1].is_active = False
        await db_session.commit()

        overview = (await progress.get_progress_overview(db_session, student.id, module_id=m11.id)).unwrap()

        assert overview.modules[0].total_pages == 1


class TestResume:
    @pytest.mark.asyncio
    async def test_fresh_module_starts_at_first_lesson(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]

        state = (await progress.get_resume_state(db_session, student.id, m11.id)).unwrap()

        assert state.lesson_id == curriculum.lessons[m11.id][0].id
        assert state.current_step_index == 0
        assert state.total_steps == 3
        assert state.is_module_complete is False
        assert state.module_progress == 0

    @pytest.mark.asyncio
    async def test_resume_returns_saved_step(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]
        await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 1, 3)

        state = (await progress.get_resume_state(db_session, student.id, m11.id)).unwrap()

        assert state.lesson_id == lesson.id
        assert state.current_step_index == 1
        assert state.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_completed_module_points_at_last_lesson(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        for lesson in curriculum.lessons[m11.id]:
            await progress.mark_lesson_complete(db_session, student.id, lesson.id)

        state = (await progress.get_resume_state(db_session, student.id, m11.id)).unwrap()

        assert state.is_module_complete is True
        assert state.lesson_id == curriculum.lessons[m11.id][-1].id
        assert state.module_progress == 100

    @pytest.mark.asyncio
    async def test_module_without_lessons(self, db_session, student):
        tree = await build_curriculum(db_session, [[0]])

        result = await progress.get_resume_state(db_session, student.id, tree.modules[0].id)

        assert result.is_err()
        assert result.unwrap_err().machine_code == "MODULE_HAS_NO_LESSONS"

    @pytest.mark.asyncio
    async def test_unknown_module(self, db_session, student):
        result = await progress.get_resume_state(db_session, student.id, uuid4())

        assert result.unwrap_err().machine_code == "MODULE_NOT_FOUND"


class TestStepProgress:
    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]

        first = (await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 1, 3)).unwrap()
        second = (await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 1, 3)).unwrap()

        assert first == second
        count = await db_session.scalar(
            select(func.count(LessonCompletion.id)).where(LessonCompletion.user_id == student.id)
        )
        assert count == 1

    @pytest.mark.asyncio
    async def test_time_accumulates(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]

        await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 0, 3, 30)
        await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 1, 3, 45)

        view = (await progress.get_lesson_progress(db_session, student.id, lesson.id)).unwrap()
        module = await _module_progress(db_session, student.id, m11.id)
        assert view.time_spent == 75
        assert module.time_spent == 75
        assert module.status == ProgressStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_step_index_is_clamped(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]

        result = (await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, 10, 3)).unwrap()

        assert result.current_step_index == 2
        assert result.is_completed is False
        assert result.percent == 100

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index,total,delta", [(-1, 3, 0), (0, 0, 0), (0, 3, -5)])
    async def test_rejects_invalid_input(self, db_session, curriculum, student, index, total, delta):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]

        result = await progress.update_step_progress(db_session, student.id, m11.id, lesson.id, index, total, delta)

        assert result.is_err()
        assert result.unwrap_err().code.http_status == 400

    @pytest.mark.asyncio
    async def test_lesson_must_belong_to_module(self, db_session, curriculum, student):
        m11, m12, _ = curriculum.modules
        lesson = curriculum.lessons[m11.id][0]

        result = await progress.update_step_progress(db_session, student.id, m12.id, lesson.id, 0, 3)

        assert result.unwrap_err().machine_code == "LESSON_MODULE_MISMATCH"

    @pytest.mark.asyncio
    async def test_does_not_reopen_completed_module(self, db_session, curriculum, student):
        m12 = curriculum.modules[1]
        lesson = curriculum.lessons[m12.id][0]
        await progress.mark_lesson_complete(db_session, student.id, lesson.id)

        await progress.update_step_progress(db_session, student.id, m12.id, lesson.id, 0, 3)

        module = await _module_progress(db_session, student.id, m12.id)
        assert module.status == ProgressStatus.COMPLETED.value
        view = (await progress.get_lesson_progress(db_session, student.id, lesson.id)).unwrap()
        assert view.is_completed is True


class TestCompletion:
    @pytest.mark.asyncio
    async def test_mark_complete_is_idempotent(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]

        first = (await progress.mark_lesson_complete(db_session, student.id, lesson.id)).unwrap()
        second = (await progress.mark_lesson_complete(db_session, student.id, lesson.id)).unwrap()

        assert first.is_completed and second.is_completed
        assert first.completed_at == second.completed_at
        module = await _module_progress(db_session, student.id, m11.id)
        assert module.completed_lessons_count == 1
        assert module.progress_percentage == 50
        assert module.status == ProgressStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_last_lesson_completes_module(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        for lesson in curriculum.lessons[m11.id]:
            await progress.mark_lesson_complete(db_session, student.id, lesson.id)

        module = await _module_progress(db_session, student.id, m11.id)
        assert module.status == ProgressStatus.COMPLETED.value
        assert module.is_module_completed is True
        assert module.progress_percentage == 100
        assert module.completed_at is not None

    @pytest.mark.asyncio
    async def test_completion_is_never_revoked(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        lesson = curriculum.lessons[m11.id][0]
        await progress.update_lesson_progress(db_session, student.id, lesson.id, completed=True, time_spent=10)

        view = (await progress.update_lesson_progress(
            db_session, student.id, lesson.id, completed=False, time_spent=5
        )).unwrap()

        assert view.is_completed is True
        assert view.time_spent == 15

    @pytest.mark.asyncio
    async def test_module_stats(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        first, second = curriculum.lessons[m11.id]
        await progress.mark_lesson_complete(db_session, student.id, first.id)

        stats = (await progress.get_module_progress_stats(db_session, student.id, m11.id)).unwrap()

        assert stats.total_lessons == 2
        assert stats.completed_lessons == 1
        assert stats.module_progress == 50
        assert stats.next_incomplete_lesson == second.id
        assert stats.last_accessed_lesson.lesson_id == first.id

    @pytest.mark.asyncio
    async def test_next_lesson(self, db_session, curriculum, student):
        m11 = curriculum.modules[0]
        first, second = curriculum.lessons[m11.id]

        assert (await progress.get_next_lesson(db_session, student.id, first.id)).unwrap().id == second.id
        assert (await progress.get_next_lesson(db_session, student.id, second.id)).unwrap() is None


class TestInactiveLessons:
    @pytest.fixture
    def retired(self, curriculum):
        lesson = curriculum.lessons[curriculum.modules[0].id][1]
        lesson.is_active = False
        return lesson

    @pytest.mark.asyncio
    async def test_writes_to_inactive_lesson_are_rejected(self, db_session, curriculum, student, retired):
        await db_session.commit()

        completed = await progress.mark_lesson_complete(db_session, student.id, retired.id)
        stepped = await progress.update_step_progress(
            db_session, student.id, retired.module_id, retired.id, 0, 3
        )
        updated = await progress.update_lesson_progress(db_session, student.id, retired.id, completed=True)

        for result in (completed, stepped, updated):
            assert result.unwrap_err().code.http_status == 404
            assert result.unwrap_err().machine_code == "LESSON_NOT_FOUND"
        rows = await db_session.scalar(select(func.count(LessonCompletion.id)))
        assert rows == 0
        assert await db_session.scalar(select(func.count(UserProgress.id))) == 0
