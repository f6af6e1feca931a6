"""Content Override Engine

Teachers customise content for one student at a time. An override never
changes the shared content; it is merged in at read time.

Override data (JSON):
    fieldOverrides   field -> value applied to the entity
    cardOverrides    step id -> field overrides (LESSON only)
    hiddenCardIds    step ids removed from the lesson (LESSON only)
    extraCards       cards inserted after ``insertAfterOrder`` (LESSON only)

CARD-type overrides target a single step and are merged with the lesson's
``cardOverrides`` (the lesson override wins on conflicting fields).
"""
import copy
from dataclasses import dataclass, field
from numbers import Number
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import commit_or_rollback, fetch_one
from core.errors import (
    AppError,
    Ok,
    Result,
    duplicate_key,
    insufficient_permissions,
    invalid_override_data,
    map_db_errors,
    not_found,
    validation_error,
)
from core.logging import engine_logger
from engines.changelog import ChangelogService, snapshot
from models.audit import ChangeAction, ChangeEntityType, ContentOverride, OverrideEntityType
from models.content import Lesson, Level, Step
from models.user import Role, TeacherStudent, User

log = engine_logger()

LESSON_ONLY_KEYS = ("extraCards", "hiddenCardIds")

# Client field names mapped onto column names
FIELD_ALIASES = {
    "order": "order_index",
    "isActive": "is_active",
    "estimatedTime": "estimated_time_min",
    "contentType": "content_type",
}

ENTITY_MODELS = {
    OverrideEntityType.LEVEL: Level,
    OverrideEntityType.LESSON: Lesson,
    OverrideEntityType.CARD: Step,
}


def apply_field_overrides(entity: dict, overrides: dict | None) -> dict:
    """Return a copy of ``entity`` with non-None overrides applied."""
    merged = copy.deepcopy(entity)
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        merged[FIELD_ALIASES.get(key, key)] = copy.deepcopy(value)
    return merged


@dataclass(slots=True)
class ResolvedSteps:
    steps: list[dict]
    hidden_step_ids: list[str] = field(default_factory=list)
    has_overrides: bool = False


def resolve_steps(
    steps: list[dict],
    override_data: dict | None,
    card_overrides: dict[str, dict] | None = None,
) -> ResolvedSteps:
    """Merge one student's overrides into a lesson's steps.

    Hidden steps are dropped, card overrides applied, extra cards slotted in
    after the step whose order equals ``insertAfterOrder``, then orders are
    renumbered 0..n-1. Inputs are never mutated.
    """
    data = override_data or {}
    hidden = {str(h) for h in data.get("hiddenCardIds") or []}
    per_card = {str(k): dict(v) for k, v in (card_overrides or {}).items()}
    for step_id, fields in (data.get("cardOverrides") or {}).items():
        per_card.setdefault(str(step_id), {}).update(fields or {})

    resolved = []
    for step in sorted(steps, key=lambda s: s["order_index"]):
        step_id = str(step["id"])
        if step_id in hidden:
            continue
        if step_id in per_card:
            item = apply_field_overrides(step, per_card[step_id])
            item["has_field_overrides"] = True
        else:
            item = copy.deepcopy(step)
        resolved.append(item)

    for extra in data.get("extraCards") or []:
        resolved.append({
            "id": str(extra["id"]),
            "title": extra.get("title"),
            "content": copy.deepcopy(extra["content"]),
            "content_type": extra["contentType"],
            "order_index": extra["insertAfterOrder"] + 0.5,
            "is_active": True,
            "is_extra_card": True,
        })

    resolved.sort(key=lambda s: s["order_index"])
    for index, item in enumerate(resolved):
        item["order_index"] = index

    return ResolvedSteps(
        steps=resolved,
        hidden_step_ids=sorted(hidden),
        has_overrides=bool(data) or bool(per_card),
    )


def validate_override_data(entity_type: OverrideEntityType, data) -> Result[dict, AppError]:
    origin = "engine.overrides"
    if not isinstance(data, dict):
        return invalid_override_data("overrideData must be an object", origin=origin)

    if entity_type != OverrideEntityType.LESSON:
        for key in LESSON_ONLY_KEYS:
            if data.get(key):
                return invalid_override_data(f"{key} is only valid for LESSON overrides", origin=origin)

    for key in ("fieldOverrides", "cardOverrides"):
        if key in data and not isinstance(data[key], dict):
            return invalid_override_data(f"{key} must be an object", origin=origin)
    if any(not isinstance(v, dict) for v in (data.get("cardOverrides") or {}).values()):
        return invalid_override_data("each cardOverrides entry must be an object", origin=origin)

    hidden = data.get("hiddenCardIds")
    if hidden is not None and (
        not isinstance(hidden, list) or not all(isinstance(h, str) for h in hidden)
    ):
        return invalid_override_data("hiddenCardIds must be a list of strings", origin=origin)

    extras = data.get("extraCards")
    if extras is not None:
        if not isinstance(extras, list):
            return invalid_override_data("extraCards must be a list", origin=origin)
        for card in extras:
            if not isinstance(card, dict) or not all(card.get(k) for k in ("id", "content", "contentType")):
                return invalid_override_data("each extraCard needs id, content and contentType", origin=origin)
            order = card.get("insertAfterOrder")
            if isinstance(order, bool) or not isinstance(order, Number):
                return invalid_override_data("each extraCard needs a numeric insertAfterOrder", origin=origin)

    return Ok(data)


def step_to_dict(step: Step) -> dict:
    return {
        "id": str(step.id),
        "lesson_id": str(step.lesson_id),
        "title": step.title,
        "content_type": step.content_type,
        "content": step.content,
        "order_index": step.order_index,
        "is_active": step.is_active,
    }


def lesson_to_dict(lesson: Lesson) -> dict:
    return {
        "id": str(lesson.id),
        "module_id": str(lesson.module_id),
        "title": lesson.title,
        "slug": lesson.slug,
        "description": lesson.description,
        "order_index": lesson.order_index,
        "estimated_time_min": lesson.estimated_time_min,
        "requires_quiz": lesson.requires_quiz,
        "requires_case": lesson.requires_case,
        "is_published": lesson.is_published,
        "is_active": lesson.is_active,
    }


@dataclass(slots=True)
class ResolvedLesson:
    lesson: dict
    steps: list[dict]
    hidden_step_ids: list[str]
    has_overrides: bool


class OverrideService:
    """Manage overrides and resolve content for a student."""

    __slots__ = ("changelog",)

    def __init__(self, changelog: ChangelogService | None = None):
        self.changelog = changelog or ChangelogService()

    async def can_manage_overrides_for(self, session: AsyncSession, actor, student_id: UUID) -> bool:
        if actor.role in (Role.ADMIN, Role.SUPERUSER):
            return True
        if actor.role != Role.TEACHER:
            return False
        result = await session.execute(
            select(TeacherStudent.id).where(
                TeacherStudent.teacher_id == actor.id,
                TeacherStudent.student_id == student_id,
            )
        )
        return result.first() is not None

    async def _authorize(self, session: AsyncSession, actor, student_id: UUID, action: str) -> Result[None, AppError]:
        if not await self.can_manage_overrides_for(session, actor, student_id):
            log.warning("override_access_denied", actor_id=str(actor.id), student_id=str(student_id))
            return insufficient_permissions(
                action,
                resource="content override",
                user_id=str(actor.id),
                origin="engine.overrides",
                error_code="CANNOT_MANAGE_OVERRIDE",
            )
        return Ok(None)

    async def _get(self, session: AsyncSession, override_id: UUID) -> Result[ContentOverride, AppError]:
        override = await session.get(ContentOverride, override_id)
        if override is None:
            return not_found("Override", override_id, origin="engine.overrides")
        return Ok(override)

    @map_db_errors("engine.overrides")
    async def create_override(
        self,
        session: AsyncSession,
        actor,
        student_id: UUID,
        entity_type: OverrideEntityType,
        entity_id: UUID,
        override_data: dict,
    ) -> Result[ContentOverride, AppError]:
        allowed = await self._authorize(session, actor, student_id, "create overrides for this student")
        if allowed.is_err():
            return allowed

        student = await session.get(User, student_id)
        if student is None:
            return not_found("Student", student_id, origin="engine.overrides")
        if student.role != Role.STUDENT.value:
            return validation_error(
                "Target user is not a student",
                field="student_id", value=str(student_id),
                error_code="INVALID_STUDENT_ROLE", origin="engine.overrides",
            )

        target = await fetch_one(session, ENTITY_MODELS[entity_type], entity_id, entity_type.value.title())
        if target.is_err():
            return target

        valid = validate_override_data(entity_type, override_data)
        if valid.is_err():
            return valid

        result = await session.execute(
            select(ContentOverride).where(
                ContentOverride.student_id == student_id,
                ContentOverride.entity_type == entity_type.value,
                ContentOverride.entity_id == entity_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None and existing.is_active:
            return duplicate_key(
                "ContentOverride", "entity_id", str(entity_id),
                origin="engine.overrides", error_code="OVERRIDE_EXISTS",
            )

        if existing is not None:
            # Re-creating over a soft-deleted override revives the row
            before = snapshot(existing)
            existing.override_data = override_data
            existing.created_by = actor.id
            existing.is_active = True
            override = existing
            self.changelog.log_change(
                session, entity_type=ChangeEntityType.CONTENT_OVERRIDE, entity_id=override.id,
                action=ChangeAction.UPDATE, changed_by=actor.id,
                before=before, after=snapshot(override), fields=["override_data", "is_active"],
            )
        else:
            override = ContentOverride(
                id=uuid4(),
                student_id=student_id,
                entity_type=entity_type.value,
                entity_id=entity_id,
                override_data=override_data,
                created_by=actor.id,
                is_active=True,
            )
            session.add(override)
            self.changelog.log_change(
                session, entity_type=ChangeEntityType.CONTENT_OVERRIDE, entity_id=override.id,
                action=ChangeAction.CREATE, changed_by=actor.id,
            )

        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed
        log.info("override_created", override_id=str(override.id), student_id=str(student_id),
                 entity_type=entity_type.value)
        return Ok(override)

    @map_db_errors("engine.overrides")
    async def update_override(
        self,
        session: AsyncSession,
        actor,
        override_id: UUID,
        override_data: dict | None = None,
        is_active: bool | None = None,
    ) -> Result[ContentOverride, AppError]:
        found = await self._get(session, override_id)
        if found.is_err():
            return found
        override = found.unwrap()
        allowed = await self._authorize(session, actor, override.student_id, "modify this override")
        if allowed.is_err():
            return allowed

        if override_data is not None:
            valid = validate_override_data(OverrideEntityType(override.entity_type), override_data)
            if valid.is_err():
                return valid

        before = snapshot(override)
        if override_data is not None:
            override.override_data = override_data
        if is_active is not None:
            override.is_active = is_active
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.CONTENT_OVERRIDE, entity_id=override.id,
            action=ChangeAction.UPDATE, changed_by=actor.id,
            before=before, after=snapshot(override), fields=["override_data", "is_active"],
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: override)

    @map_db_errors("engine.overrides")
    async def delete_override(
        self, session: AsyncSession, actor, override_id: UUID
    ) -> Result[ContentOverride, AppError]:
        found = await self._get(session, override_id)
        if found.is_err():
            return found
        override = found.unwrap()
        allowed = await self._authorize(session, actor, override.student_id, "delete this override")
        if allowed.is_err():
            return allowed

        override.is_active = False
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.CONTENT_OVERRIDE, entity_id=override.id,
            action=ChangeAction.DELETE, changed_by=actor.id,
            diff={"is_active": {"before": True, "after": False}},
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: override)

    async def get_override(self, session: AsyncSession, actor, override_id: UUID) -> Result[ContentOverride, AppError]:
        found = await self._get(session, override_id)
        if found.is_err():
            return found
        allowed = await self._authorize(session, actor, found.unwrap().student_id, "view this override")
        if allowed.is_err():
            return allowed
        return found

    async def list_for_student(
        self,
        session: AsyncSession,
        actor,
        student_id: UUID,
        entity_type: OverrideEntityType | None = None,
        include_inactive: bool = False,
    ) -> Result[list[ContentOverride], AppError]:
        allowed = await self._authorize(session, actor, student_id, "view overrides for this student")
        if allowed.is_err():
            return allowed
        query = select(ContentOverride).where(ContentOverride.student_id == student_id)
        if entity_type is not None:
            query = query.where(ContentOverride.entity_type == entity_type.value)
        if not include_inactive:
            query = query.where(ContentOverride.is_active == True)
        result = await session.execute(query.order_by(ContentOverride.created_at.desc()))
        return Ok(list(result.scalars().all()))

    async def has_active_override(
        self,
        session: AsyncSession,
        student_id: UUID,
        entity_type: OverrideEntityType,
        entity_id: UUID,
    ) -> bool:
        result = await session.execute(
            select(ContentOverride.id).where(
                ContentOverride.student_id == student_id,
                ContentOverride.entity_type == entity_type.value,
                ContentOverride.entity_id == entity_id,
                ContentOverride.is_active == True,
            )
        )
        return result.first() is not None

    @map_db_errors("engine.overrides")
    async def resolve_lesson_for_student(
        self, session: AsyncSession, student_id: UUID, lesson_id: UUID
    ) -> Result[ResolvedLesson, AppError]:
        """The lesson and its steps as this student sees them."""
        found = await fetch_one(session, Lesson, lesson_id, "Lesson")
        if found.is_err():
            return found
        lesson = found.unwrap()

        step_rows = await session.execute(
            select(Step)
            .where(Step.lesson_id == lesson_id, Step.is_active == True)
            .order_by(Step.order_index)
        )
        steps = list(step_rows.scalars().all())

        overrides = await session.execute(
            select(ContentOverride).where(
                ContentOverride.student_id == student_id,
                ContentOverride.is_active == True,
                (
                    (ContentOverride.entity_type == OverrideEntityType.LESSON.value)
                    & (ContentOverride.entity_id == lesson_id)
                ) | (
                    (ContentOverride.entity_type == OverrideEntityType.CARD.value)
                    & ContentOverride.entity_id.in_([s.id for s in steps])
                ),
            )
        )
        lesson_data: dict = {}
        card_overrides: dict[str, dict] = {}
        for override in overrides.scalars().all():
            if override.entity_type == OverrideEntityType.LESSON.value:
                lesson_data = override.override_data or {}
            else:
                card_overrides[str(override.entity_id)] = (override.override_data or {}).get("fieldOverrides") or {}

        resolved = resolve_steps([step_to_dict(s) for s in steps], lesson_data, card_overrides)
        return Ok(ResolvedLesson(
            lesson=apply_field_overrides(lesson_to_dict(lesson), lesson_data.get("fieldOverrides")),
            steps=resolved.steps,
            hidden_step_ids=resolved.hidden_step_ids,
            has_overrides=resolved.has_overrides,
        ))

    async def get_adjusted_total_steps(
        self, session: AsyncSession, student_id: UUID, lesson_id: UUID
    ) -> Result[int, AppError]:
        """Visible step count for the student (hidden removed, extras added)."""
        resolved = await self.resolve_lesson_for_student(session, student_id, lesson_id)
        return resolved.map(lambda r: len(r.steps))
