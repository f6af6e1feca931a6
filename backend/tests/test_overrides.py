"""Per-student content overrides."""
import copy
from uuid import uuid4

import pytest

from engines.overrides import (
    OverrideService,
    apply_field_overrides,
    resolve_steps,
    validate_override_data,
)
from models.audit import OverrideEntityType
from models.user import Role
from tests.conftest import as_current, create_user

overrides = OverrideService()


def make_steps(n: int = 3) -> list[dict]:
    return [
        {"id": f"s{i}", "title": f"Paso {i}", "content_type": "text", "content": {"n": i}, "order_index": i}
        for i in range(n)
    ]


class TestResolveSteps:
    def test_no_overrides(self):
        steps = make_steps()

        resolved = resolve_steps(steps, None)

        assert [s["id"] for s in resolved.steps] == ["s0", "s1", "s2"]
        assert resolved.has_overrides is False

    def test_hidden_steps_are_removed(self):
        resolved = resolve_steps(make_steps(), {"hiddenCardIds": ["s1"]})

        assert [s["id"] for s in resolved.steps] == ["s0", "s2"]
        assert [s["order_index"] for s in resolved.steps] == [0, 1]
        assert resolved.hidden_step_ids == ["s1"]

    def test_extra_card_inserted_after_order(self):
        data = {"extraCards": [
            {"id": "x1", "content": {"markdown": "repaso"}, "contentType": "text", "insertAfterOrder": 0},
        ]}

        resolved = resolve_steps(make_steps(), data)

        assert [s["id"] for s in resolved.steps] == ["s0", "x1", "s1", "s2"]
        assert [s["order_index"] for s in resolved.steps] == [0, 1, 2, 3]
        assert resolved.steps[1]["is_extra_card"] is True
        assert resolved.steps[1]["content_type"] == "text"

    def test_card_overrides_from_lesson_and_card(self):
        data = {"cardOverrides": {"s0": {"title": "Desde lección"}}}
        cards = {"s0": {"title": "Desde tarjeta", "contentType": "video"}, "s2": {"isActive": False}}

        resolved = resolve_steps(make_steps(), data, cards)

        first, second, third = resolved.steps
        assert first["title"] == "Desde lección"
        assert first["content_type"] == "video"
        assert first["has_field_overrides"] is True
        assert "has_field_overrides" not in second
        assert third["is_active"] is False

    def test_inputs_not_mutated(self):
        steps = make_steps()
        data = {
            "hiddenCardIds": ["s0"],
            "cardOverrides": {"s1": {"content": {"n": 99}}},
            "extraCards": [{"id": "x", "content": {"a": 1}, "contentType": "text", "insertAfterOrder": 2}],
        }
        steps_before, data_before = copy.deepcopy(steps), copy.deepcopy(data)

        resolved = resolve_steps(steps, data)
        resolved.steps[0]["content"]["n"] = -1

        assert steps == steps_before
        assert data == data_before

    def test_apply_field_overrides_skips_none(self):
        merged = apply_field_overrides({"title": "A", "order_index": 0}, {"title": None, "order": 4})

        assert merged == {"title": "A", "order_index": 4}


class TestValidateOverrideData:
    def test_lesson_payload_accepted(self):
        data = {
            "fieldOverrides": {"title": "Otra"},
            "hiddenCardIds": ["a"],
            "extraCards": [{"id": "x", "content": {"markdown": "x"}, "contentType": "text", "insertAfterOrder": 1.5}],
        }

        assert validate_override_data(OverrideEntityType.LESSON, data).is_ok()

    @pytest.mark.parametrize("entity_type,data", [
        (OverrideEntityType.LESSON, "nope"),
        (OverrideEntityType.CARD, {"hiddenCardIds": ["a"]}),
        (OverrideEntityType.LEVEL, {"extraCards": [{"id": "x"}]}),
        (OverrideEntityType.LESSON, {"hiddenCardIds": [1]}),
        (OverrideEntityType.LESSON, {"cardOverrides": {"a": "b"}}),
        (OverrideEntityType.LESSON, {"extraCards": [{"id": "x", "content": {"a": 1}, "contentType": "text"}]}),
        (OverrideEntityType.LESSON, {"extraCards": [
            {"id": "x", "content": {"a": 1}, "contentType": "text", "insertAfterOrder": True},
        ]}),
    ])
    def test_invalid_payloads(self, entity_type, data):
        result = validate_override_data(entity_type, data)

        assert result.unwrap_err().machine_code == "INVALID_OVERRIDE_DATA"
        assert result.unwrap_err().code.http_status == 400


class TestOverrideService:
    @pytest.mark.asyncio
    async def test_unassigned_teacher_is_rejected(self, db_session, curriculum, teacher, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        result = await overrides.create_override(
            db_session, as_current(teacher), student.id, OverrideEntityType.LESSON, lesson.id, {}
        )

        assert result.unwrap_err().machine_code == "CANNOT_MANAGE_OVERRIDE"
        assert result.unwrap_err().code.http_status == 403

    @pytest.mark.asyncio
    async def test_assigned_teacher_creates_and_duplicate_conflicts(
        self, db_session, curriculum, teacher, assigned_student
    ):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        actor = as_current(teacher)

        created = (await overrides.create_override(
            db_session, actor, assigned_student.id, OverrideEntityType.LESSON, lesson.id, {"hiddenCardIds": []}
        )).unwrap()
        again = await overrides.create_override(
            db_session, actor, assigned_student.id, OverrideEntityType.LESSON, lesson.id, {}
        )

        assert created.created_by == teacher.id
        assert again.unwrap_err().machine_code == "OVERRIDE_EXISTS"
        assert await overrides.has_active_override(
            db_session, assigned_student.id, OverrideEntityType.LESSON, lesson.id
        )

    @pytest.mark.asyncio
    async def test_target_must_be_student(self, db_session, curriculum, admin, teacher):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]

        result = await overrides.create_override(
            db_session, as_current(admin), teacher.id, OverrideEntityType.LESSON, lesson.id, {}
        )

        assert result.unwrap_err().machine_code == "INVALID_STUDENT_ROLE"

    @pytest.mark.asyncio
    async def test_target_entity_must_exist(self, db_session, admin, student):
        result = await overrides.create_override(
            db_session, as_current(admin), student.id, OverrideEntityType.CARD, uuid4(), {}
        )

        assert result.unwrap_err().code.http_status == 404

    @pytest.mark.asyncio
    async def test_deleted_override_is_revived(self, db_session, curriculum, admin, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        actor = as_current(admin)
        first = (await overrides.create_override(
            db_session, actor, student.id, OverrideEntityType.LESSON, lesson.id, {"hiddenCardIds": ["a"]}
        )).unwrap()
        (await overrides.delete_override(db_session, actor, first.id)).unwrap()
        assert not await overrides.has_active_override(db_session, student.id, OverrideEntityType.LESSON, lesson.id)

        revived = (await overrides.create_override(
            db_session, actor, student.id, OverrideEntityType.LESSON, lesson.id, {"hiddenCardIds": ["b"]}
        )).unwrap()

        assert revived.id == first.id
        assert revived.is_active is True
        assert revived.override_data == {"hiddenCardIds": ["b"]}

    @pytest.mark.asyncio
    async def test_list_and_update(self, db_session, curriculum, teacher, assigned_student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        actor = as_current(teacher)
        created = (await overrides.create_override(
            db_session, actor, assigned_student.id, OverrideEntityType.LESSON, lesson.id, {}
        )).unwrap()

        updated = (await overrides.update_override(db_session, actor, created.id, is_active=False)).unwrap()
        active = (await overrides.list_for_student(db_session, actor, assigned_student.id)).unwrap()
        everything = (await overrides.list_for_student(
            db_session, actor, assigned_student.id, include_inactive=True
        )).unwrap()

        assert updated.is_active is False
        assert active == []
        assert [o.id for o in everything] == [created.id]

    @pytest.mark.asyncio
    async def test_other_teacher_cannot_read(self, db_session, curriculum, teacher, assigned_student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        created = (await overrides.create_override(
            db_session, as_current(teacher), assigned_student.id, OverrideEntityType.LESSON, lesson.id, {}
        )).unwrap()
        stranger = await create_user(db_session, Role.TEACHER)

        result = await overrides.get_override(db_session, as_current(stranger), created.id)

        assert result.unwrap_err().code.http_status == 403

    @pytest.mark.asyncio
    async def test_resolve_lesson_for_student(self, db_session, curriculum, admin, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        s0, s1, s2 = curriculum.steps[lesson.id]
        actor = as_current(admin)
        await overrides.create_override(db_session, actor, student.id, OverrideEntityType.LESSON, lesson.id, {
            "fieldOverrides": {"title": "Lección adaptada"},
            "hiddenCardIds": [str(s1.id)],
            "extraCards": [{"id": "extra-1", "content": {"markdown": "apoyo"}, "contentType": "text",
                            "insertAfterOrder": 2}],
        })
        await overrides.create_override(db_session, actor, student.id, OverrideEntityType.CARD, s0.id, {
            "fieldOverrides": {"title": "Paso adaptado"},
        })

        resolved = (await overrides.resolve_lesson_for_student(db_session, student.id, lesson.id)).unwrap()

        assert resolved.lesson["title"] == "Lección adaptada"
        assert [s["id"] for s in resolved.steps] == [str(s0.id), str(s2.id), "extra-1"]
        assert resolved.steps[0]["title"] == "Paso adaptado"
        assert resolved.hidden_step_ids == [str(s1.id)]
        assert resolved.has_overrides is True
        assert (await overrides.get_adjusted_total_steps(db_session, student.id, lesson.id)).unwrap() == 3

    @pytest.mark.asyncio
    async def test_other_students_see_shared_content(self, db_session, curriculum, admin, student):
        lesson = curriculum.lessons[curriculum.modules[0].id][0]
        await overrides.create_override(
            db_session, as_current(admin), student.id, OverrideEntityType.LESSON, lesson.id,
            {"hiddenCardIds": [str(curriculum.steps[lesson.id][0].id)]},
        )
        classmate = await create_user(db_session, Role.STUDENT)

        resolved = (await overrides.resolve_lesson_for_student(db_session, classmate.id, lesson.id)).unwrap()

        assert len(resolved.steps) == 3
        assert resolved.has_overrides is False
