"""Curriculum authoring: ordering, prerequisites and audit entries."""
from uuid import uuid4

import pytest
from sqlalchemy import select

from engines.content import ContentService, creates_cycle, slugify
from models.audit import ChangeLog

content = ContentService()


async def entries_for(session, entity_id) -> list[ChangeLog]:
    result = await session.execute(
        select(ChangeLog).where(ChangeLog.entity_id == entity_id).order_by(ChangeLog.changed_at)
    )
    return list(result.scalars().all())


class TestHelpers:
    def test_slugify(self):
        assert slugify("Modos Ventilatorios: VC/PC") == "modos-ventilatorios-vc-pc"
        assert slugify("   ") == "lesson"

    def test_creates_cycle(self):
        a, b, c = uuid4(), uuid4(), uuid4()
        edges = {a: {b}, b: {c}}

        assert creates_cycle(edges, c, a) is True
        assert creates_cycle(edges, a, c) is False
        assert creates_cycle({}, a, b) is False


class TestLevels:
    @pytest.mark.asyncio
    async def test_create_logs_entry(self, db_session, admin):
        level = (await content.create_level(db_session, admin.id, {"title": "Fundamentos", "order_index": 0})).unwrap()

        entries = await entries_for(db_session, level.id)
        assert [(e.entity_type, e.action, e.changed_by) for e in entries] == [("Level", "create", admin.id)]

    @pytest.mark.asyncio
    async def test_duplicate_title_and_order(self, db_session, admin):
        await content.create_level(db_session, admin.id, {"title": "Fundamentos", "order_index": 0})

        same_title = await content.create_level(db_session, admin.id, {"title": "Fundamentos", "order_index": 1})
        same_order = await content.create_level(db_session, admin.id, {"title": "Clínica", "order_index": 0})

        assert same_title.unwrap_err().machine_code == "DUPLICATE_LEVEL_TITLE"
        assert same_order.unwrap_err().machine_code == "DUPLICATE_ORDER"
        assert same_order.unwrap_err().code.http_status == 409

    @pytest.mark.asyncio
    async def test_update_records_diff(self, db_session, admin):
        level = (await content.create_level(db_session, admin.id, {"title": "Fundamentos", "order_index": 0})).unwrap()

        await content.update_level(db_session, admin.id, level.id, {"title": "Fundamentos I"})

        update = (await entries_for(db_session, level.id))[-1]
        assert update.action == "update"
        assert update.diff == {"title": {"before": "Fundamentos", "after": "Fundamentos I"}}

    @pytest.mark.asyncio
    async def test_noop_update_is_not_logged(self, db_session, admin):
        level = (await content.create_level(db_session, admin.id, {"title": "Fundamentos", "order_index": 0})).unwrap()

        await content.update_level(db_session, admin.id, level.id, {"title": "Fundamentos"})

        assert len(await entries_for(db_session, level.id)) == 1

    @pytest.mark.asyncio
    async def test_cannot_delete_level_with_modules(self, db_session, curriculum, admin):
        result = await content.delete_level(db_session, admin.id, curriculum.levels[0].id)

        assert result.unwrap_err().machine_code == "LEVEL_HAS_MODULES"

    @pytest.mark.asyncio
    async def test_level_prerequisite_cycle(self, db_session, curriculum, admin):
        level1, level2 = curriculum.levels
        (await content.add_level_prerequisite(db_session, admin.id, level2.id, level1.id)).unwrap()

        cycle = await content.add_level_prerequisite(db_session, admin.id, level1.id, level2.id)
        itself = await content.add_level_prerequisite(db_session, admin.id, level1.id, level1.id)
        again = await content.add_level_prerequisite(db_session, admin.id, level2.id, level1.id)

        assert cycle.unwrap_err().machine_code == "CIRCULAR_DEPENDENCY"
        assert itself.unwrap_err().code.http_status == 400
        assert again.unwrap_err().machine_code == "DUPLICATE_LEVEL_PREREQUISITE"


class TestModules:
    @pytest.mark.asyncio
    async def test_order_unique_among_active_siblings(self, db_session, curriculum, admin):
        level = curriculum.levels[0]

        taken = await content.create_module(db_session, admin.id, {"level_id": level.id, "title": "X", "order_index": 0})
        assert taken.unwrap_err().machine_code == "DUPLICATE_ORDER"

        (await content.delete_module(db_session, admin.id, curriculum.modules[0].id)).unwrap()
        reused = await content.create_module(db_session, admin.id, {"level_id": level.id, "title": "X", "order_index": 0})
        assert reused.is_ok()

    @pytest.mark.asyncio
    async def test_same_order_in_other_level_is_fine(self, db_session, curriculum, admin):
        result = await content.create_module(
            db_session, admin.id, {"level_id": curriculum.levels[1].id, "title": "Nuevo", "order_index": 1}
        )

        assert result.is_ok()

    @pytest.mark.asyncio
    async def test_unknown_level(self, db_session, admin):
        result = await content.create_module(db_session, admin.id, {"level_id": uuid4(), "title": "X"})

        assert result.unwrap_err().machine_code == "LEVEL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_module_prerequisites(self, db_session, curriculum, admin):
        m11, m12, m21 = curriculum.modules
        (await content.add_module_prerequisite(db_session, admin.id, m12.id, m11.id)).unwrap()
        (await content.add_module_prerequisite(db_session, admin.id, m21.id, m12.id)).unwrap()

        cycle = await content.add_module_prerequisite(db_session, admin.id, m11.id, m21.id)
        itself = await content.add_module_prerequisite(db_session, admin.id, m11.id, m11.id)

        assert cycle.unwrap_err().code.http_status == 409
        assert itself.unwrap_err().code.http_status == 400
        entries = await entries_for(db_session, m12.id)
        assert entries[-1].diff["prerequisites"]["after"] == [str(m11.id)]

    @pytest.mark.asyncio
    async def test_remove_missing_prerequisite(self, db_session, curriculum, admin):
        m11, m12, _ = curriculum.modules

        result = await content.remove_module_prerequisite(db_session, admin.id, m12.id, m11.id)

        assert result.unwrap_err().code.http_status == 404

    @pytest.mark.asyncio
    async def test_list_modules_paginates(self, db_session, curriculum):
        items, total = (await content.list_modules(db_session, offset=1, limit=1)).unwrap()

        assert total == 3
        assert [m.id for m in items] == [curriculum.modules[1].id]


class TestLessonsAndSteps:
    @pytest.mark.asyncio
    async def test_slug_generated_and_unique(self, db_session, curriculum, admin):
        module = curriculum.modules[2]
        lesson = (await content.create_lesson(
            db_session, admin.id, module.id, {"title": "Presión Control", "order_index": 5}
        )).unwrap()
        duplicate = await content.create_lesson(
            db_session, admin.id, module.id, {"title": "Presión control", "order_index": 6}
        )

        assert lesson.slug == "presi-n-control"
        assert duplicate.unwrap_err().machine_code == "DUPLICATE_SLUG"

    @pytest.mark.asyncio
    async def test_step_appended_after_last(self, db_session, curriculum, admin):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        step = (await content.create_step(
            db_session, admin.id, lesson.id, {"title": "Extra", "content_type": "text", "content": {}}
        )).unwrap()

        assert step.order_index == 3

    @pytest.mark.asyncio
    async def test_step_content_type_checked(self, db_session, curriculum, admin):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        result = await content.create_step(db_session, admin.id, lesson.id, {"content_type": "hologram"})

        assert result.unwrap_err().machine_code == "INVALID_STEP_CONTENT_TYPE"

    @pytest.mark.asyncio
    async def test_reorder_steps(self, db_session, curriculum, admin):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        ids = [s.id for s in curriculum.steps[lesson.id]]
        wanted = list(reversed(ids))

        reordered = (await content.reorder_steps(db_session, admin.id, lesson.id, wanted)).unwrap()

        assert [s.id for s in reordered] == wanted
        assert [s.order_index for s in reordered] == [0, 1, 2]
        listed = await content.list_steps(db_session, lesson.id)
        assert [s.id for s in listed] == wanted
        entry = (await entries_for(db_session, lesson.id))[-1]
        assert entry.action == "reorder"

    @pytest.mark.asyncio
    async def test_reorder_requires_permutation(self, db_session, curriculum, admin):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        ids = [s.id for s in curriculum.steps[lesson.id]]

        missing = await content.reorder_steps(db_session, admin.id, lesson.id, ids[:2])
        repeated = await content.reorder_steps(db_session, admin.id, lesson.id, [ids[0], ids[0], ids[1]])

        assert missing.is_err() and repeated.is_err()
        assert missing.unwrap_err().code.http_status == 400
