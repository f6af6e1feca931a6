"""Content Engine

Authoring operations on the curriculum (levels, modules, lessons, steps
and the prerequisite graphs). Every mutation stages a changelog entry in
the same transaction.

Order values are unique among the *active* children of a parent; deleted
content is deactivated rather than removed so progress rows stay valid.
"""
import re
from collections import defaultdict
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.database import commit_or_rollback, fetch_one
from core.errors import (
    AppError,
    Ok,
    Result,
    circular_dependency,
    duplicate_key,
    map_db_errors,
    not_found,
    operation_not_allowed,
    self_prerequisite,
    validation_error,
)
from core.logging import engine_logger
from engines.changelog import ChangelogService, snapshot
from models.audit import ChangeAction, ChangeEntityType
from models.content import (
    STEP_CONTENT_TYPES,
    Lesson,
    Level,
    LevelPrerequisite,
    Module,
    ModulePrerequisite,
    Step,
)

log = engine_logger()

LEVEL_FIELDS = ("title", "description", "order_index", "is_optional", "is_active")
MODULE_FIELDS = (
    "level_id", "title", "description", "difficulty",
    "estimated_duration_min", "order_index", "is_active", "extra_data",
)
LESSON_FIELDS = (
    "title", "slug", "description", "order_index", "estimated_time_min",
    "requires_quiz", "requires_case", "passing_score", "is_published", "is_active",
)
STEP_FIELDS = ("title", "content_type", "content", "order_index", "is_active")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_STRIP.sub("-", text.lower()).strip("-") or "lesson"


def creates_cycle(edges: dict[UUID, set[UUID]], node_id: UUID, prerequisite_id: UUID) -> bool:
    """Would adding ``node_id -> prerequisite_id`` close a cycle?

    ``edges`` maps each node to the prerequisites it already requires. A
    cycle appears iff ``node_id`` is reachable from ``prerequisite_id``.
    """
    stack = [prerequisite_id]
    visited: set[UUID] = set()
    while stack:
        current = stack.pop()
        if current == node_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(edges.get(current, ()))
    return False


def _pick(data: dict, allowed: tuple[str, ...]) -> dict:
    return {k: v for k, v in data.items() if k in allowed}


class ContentService:
    """CRUD and graph maintenance for curriculum content."""

    __slots__ = ("changelog",)

    def __init__(self, changelog: ChangelogService | None = None):
        self.changelog = changelog or ChangelogService()

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    async def _order_taken(
        self,
        session: AsyncSession,
        model,
        parent_column,
        parent_id: UUID | None,
        order_index: int,
        exclude_id: UUID | None = None,
    ) -> bool:
        query = select(func.count(model.id)).where(
            model.order_index == order_index,
            model.is_active == True,
        )
        if parent_column is not None:
            query = query.where(
                parent_column.is_(None) if parent_id is None else parent_column == parent_id
            )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        return bool(await session.scalar(query))

    def _duplicate_order(self, entity: str, order_index: int) -> Result:
        return duplicate_key(
            entity, "order_index", str(order_index),
            origin="engine.content", error_code="DUPLICATE_ORDER",
        )

    async def _load_edges(self, session: AsyncSession, model, node_col, prereq_col) -> dict[UUID, set[UUID]]:
        rows = await session.execute(select(node_col, prereq_col))
        edges: dict[UUID, set[UUID]] = defaultdict(set)
        for node, prereq in rows.all():
            edges[node].add(prereq)
        return edges

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    async def list_levels(self, session: AsyncSession, include_inactive: bool = False) -> list[Level]:
        query = select(Level).options(selectinload(Level.prerequisites)).order_by(Level.order_index)
        if not include_inactive:
            query = query.where(Level.is_active == True)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_level(self, session: AsyncSession, level_id: UUID) -> Result[Level, AppError]:
        return await fetch_one(session, Level, level_id, "Level")

    async def _check_level(
        self, session: AsyncSession, data: dict, exclude_id: UUID | None = None
    ) -> Result[None, AppError]:
        if "title" in data:
            query = select(func.count(Level.id)).where(Level.title == data["title"])
            if exclude_id is not None:
                query = query.where(Level.id != exclude_id)
            if await session.scalar(query):
                return duplicate_key("Level", "title", data["title"], origin="engine.content",
                                     error_code="DUPLICATE_LEVEL_TITLE")
        if "order_index" in data and await self._order_taken(
            session, Level, None, None, data["order_index"], exclude_id
        ):
            return self._duplicate_order("Level", data["order_index"])
        return Ok(None)

    async def create_level(self, session: AsyncSession, actor_id: UUID, data: dict) -> Result[Level, AppError]:
        data = _pick(data, LEVEL_FIELDS)
        check = await self._check_level(session, data)
        if check.is_err():
            return check

        level = Level(id=uuid4(), **data)
        session.add(level)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LEVEL, entity_id=level.id,
            action=ChangeAction.CREATE, changed_by=actor_id,
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed
        log.info("level_created", level_id=str(level.id), title=level.title)
        return Ok(level)

    async def update_level(
        self, session: AsyncSession, actor_id: UUID, level_id: UUID, data: dict
    ) -> Result[Level, AppError]:
        found = await self.get_level(session, level_id)
        if found.is_err():
            return found
        level = found.unwrap()
        data = _pick(data, LEVEL_FIELDS)
        changed = {k: v for k, v in data.items() if getattr(level, k) != v}
        check = await self._check_level(session, changed, exclude_id=level.id)
        if check.is_err():
            return check

        before = snapshot(level)
        for key, value in changed.items():
            setattr(level, key, value)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LEVEL, entity_id=level.id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            before=before, after=snapshot(level),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: level)

    async def delete_level(self, session: AsyncSession, actor_id: UUID, level_id: UUID) -> Result[Level, AppError]:
        """Deactivate a level that no longer has active modules."""
        found = await self.get_level(session, level_id)
        if found.is_err():
            return found
        level = found.unwrap()

        active_modules = await session.scalar(
            select(func.count(Module.id)).where(Module.level_id == level.id, Module.is_active == True)
        )
        if active_modules:
            return operation_not_allowed(
                "delete level", f"level has {active_modules} active modules",
                origin="engine.content", error_code="LEVEL_HAS_MODULES",
            )

        level.is_active = False
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LEVEL, entity_id=level.id,
            action=ChangeAction.DELETE, changed_by=actor_id, before=snapshot(level),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: level)

    async def add_level_prerequisite(
        self, session: AsyncSession, actor_id: UUID, level_id: UUID, prerequisite_level_id: UUID
    ) -> Result[LevelPrerequisite, AppError]:
        if level_id == prerequisite_level_id:
            return self_prerequisite("Level", level_id, origin="engine.content")
        for lid in (level_id, prerequisite_level_id):
            found = await self.get_level(session, lid)
            if found.is_err():
                return found

        edges = await self._load_edges(
            session, LevelPrerequisite,
            LevelPrerequisite.level_id, LevelPrerequisite.prerequisite_level_id,
        )
        if prerequisite_level_id in edges.get(level_id, set()):
            return duplicate_key(
                "LevelPrerequisite", "prerequisite_level_id", str(prerequisite_level_id),
                origin="engine.content", error_code="DUPLICATE_LEVEL_PREREQUISITE",
            )
        if creates_cycle(edges, level_id, prerequisite_level_id):
            return circular_dependency("Level", level_id, prerequisite_level_id, origin="engine.content")

        before = sorted(str(p) for p in edges.get(level_id, set()))
        edge = LevelPrerequisite(id=uuid4(), level_id=level_id, prerequisite_level_id=prerequisite_level_id)
        session.add(edge)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LEVEL, entity_id=level_id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            diff={"prerequisites": {"before": before, "after": sorted(before + [str(prerequisite_level_id)])}},
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: edge)

    async def remove_level_prerequisite(
        self, session: AsyncSession, actor_id: UUID, level_id: UUID, prerequisite_level_id: UUID
    ) -> Result[None, AppError]:
        result = await session.execute(
            select(LevelPrerequisite).where(
                LevelPrerequisite.level_id == level_id,
                LevelPrerequisite.prerequisite_level_id == prerequisite_level_id,
            )
        )
        edge = result.scalar_one_or_none()
        if edge is None:
            return not_found("LevelPrerequisite", prerequisite_level_id, origin="engine.content")

        await session.delete(edge)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LEVEL, entity_id=level_id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            diff={"prerequisites": {"removed": str(prerequisite_level_id)}},
        )
        return await commit_or_rollback(session)

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    @map_db_errors("engine.content")
    async def list_modules(
        self,
        session: AsyncSession,
        level_id: UUID | None = None,
        include_inactive: bool = False,
        offset: int = 0,
        limit: int = 20,
    ) -> Result[tuple[list[Module], int], AppError]:
        query = select(Module)
        count_query = select(func.count(Module.id))
        if level_id is not None:
            query = query.where(Module.level_id == level_id)
            count_query = count_query.where(Module.level_id == level_id)
        if not include_inactive:
            query = query.where(Module.is_active == True)
            count_query = count_query.where(Module.is_active == True)

        total = await session.scalar(count_query)
        result = await session.execute(
            query.outerjoin(Level, Module.level_id == Level.id)
            .order_by(Level.order_index, Module.order_index)
            .offset(offset)
            .limit(limit)
        )
        return Ok((list(result.scalars().all()), total or 0))

    async def get_module(self, session: AsyncSession, module_id: UUID) -> Result[Module, AppError]:
        result = await session.execute(
            select(Module)
            .options(selectinload(Module.lessons), selectinload(Module.prerequisites))
            .where(Module.id == module_id)
        )
        module = result.scalar_one_or_none()
        if module is None:
            return not_found("Module", module_id, origin="engine.content")
        return Ok(module)

    async def create_module(self, session: AsyncSession, actor_id: UUID, data: dict) -> Result[Module, AppError]:
        data = _pick(data, MODULE_FIELDS)
        level_id = data.get("level_id")
        if level_id is not None:
            found = await self.get_level(session, level_id)
            if found.is_err():
                return found
        order_index = data.setdefault("order_index", 0)
        if await self._order_taken(session, Module, Module.level_id, level_id, order_index):
            return self._duplicate_order("Module", order_index)

        module = Module(id=uuid4(), **data)
        session.add(module)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.MODULE, entity_id=module.id,
            action=ChangeAction.CREATE, changed_by=actor_id,
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed
        log.info("module_created", module_id=str(module.id), level_id=str(level_id) if level_id else None)
        return Ok(module)

    async def update_module(
        self, session: AsyncSession, actor_id: UUID, module_id: UUID, data: dict
    ) -> Result[Module, AppError]:
        found = await fetch_one(session, Module, module_id, "Module")
        if found.is_err():
            return found
        module = found.unwrap()
        changed = {k: v for k, v in _pick(data, MODULE_FIELDS).items() if getattr(module, k) != v}

        if changed.get("level_id") is not None:
            level = await self.get_level(session, changed["level_id"])
            if level.is_err():
                return level
        if "order_index" in changed or "level_id" in changed:
            level_id = changed.get("level_id", module.level_id)
            order_index = changed.get("order_index", module.order_index)
            if await self._order_taken(session, Module, Module.level_id, level_id, order_index, module.id):
                return self._duplicate_order("Module", order_index)

        before = snapshot(module)
        for key, value in changed.items():
            setattr(module, key, value)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.MODULE, entity_id=module.id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            before=before, after=snapshot(module),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: module)

    async def delete_module(self, session: AsyncSession, actor_id: UUID, module_id: UUID) -> Result[Module, AppError]:
        found = await fetch_one(session, Module, module_id, "Module")
        if found.is_err():
            return found
        module = found.unwrap()
        module.is_active = False
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.MODULE, entity_id=module.id,
            action=ChangeAction.DELETE, changed_by=actor_id, before=snapshot(module),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: module)

    async def add_module_prerequisite(
        self, session: AsyncSession, actor_id: UUID, module_id: UUID, prerequisite_id: UUID
    ) -> Result[ModulePrerequisite, AppError]:
        if module_id == prerequisite_id:
            return self_prerequisite("Module", module_id, origin="engine.content")
        for mid in (module_id, prerequisite_id):
            found = await fetch_one(session, Module, mid, "Module")
            if found.is_err():
                return found

        edges = await self._load_edges(
            session, ModulePrerequisite,
            ModulePrerequisite.module_id, ModulePrerequisite.prerequisite_id,
        )
        if prerequisite_id in edges.get(module_id, set()):
            return duplicate_key(
                "ModulePrerequisite", "prerequisite_id", str(prerequisite_id),
                origin="engine.content", error_code="DUPLICATE_PREREQUISITE",
            )
        if creates_cycle(edges, module_id, prerequisite_id):
            return circular_dependency("Module", module_id, prerequisite_id, origin="engine.content")

        before = sorted(str(p) for p in edges.get(module_id, set()))
        edge = ModulePrerequisite(id=uuid4(), module_id=module_id, prerequisite_id=prerequisite_id)
        session.add(edge)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.MODULE, entity_id=module_id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            diff={"prerequisites": {"before": before, "after": sorted(before + [str(prerequisite_id)])}},
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: edge)

    async def remove_module_prerequisite(
        self, session: AsyncSession, actor_id: UUID, module_id: UUID, prerequisite_id: UUID
    ) -> Result[None, AppError]:
        result = await session.execute(
            select(ModulePrerequisite).where(
                ModulePrerequisite.module_id == module_id,
                ModulePrerequisite.prerequisite_id == prerequisite_id,
            )
        )
        edge = result.scalar_one_or_none()
        if edge is None:
            return not_found("ModulePrerequisite", prerequisite_id, origin="engine.content")

        await session.delete(edge)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.MODULE, entity_id=module_id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            diff={"prerequisites": {"removed": str(prerequisite_id)}},
        )
        return await commit_or_rollback(session)

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------

    async def list_lessons(
        self, session: AsyncSession, module_id: UUID, include_inactive: bool = False
    ) -> list[Lesson]:
        query = select(Lesson).where(Lesson.module_id == module_id).order_by(Lesson.order_index)
        if not include_inactive:
            query = query.where(Lesson.is_active == True)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_lesson(self, session: AsyncSession, lesson_id: UUID) -> Result[Lesson, AppError]:
        return await fetch_one(session, Lesson, lesson_id, "Lesson")

    async def _slug_taken(
        self, session: AsyncSession, module_id: UUID, slug: str, exclude_id: UUID | None = None
    ) -> bool:
        query = select(func.count(Lesson.id)).where(Lesson.module_id == module_id, Lesson.slug == slug)
        if exclude_id is not None:
            query = query.where(Lesson.id != exclude_id)
        return bool(await session.scalar(query))

    async def create_lesson(
        self, session: AsyncSession, actor_id: UUID, module_id: UUID, data: dict
    ) -> Result[Lesson, AppError]:
        found = await fetch_one(session, Module, module_id, "Module")
        if found.is_err():
            return found

        data = _pick(data, LESSON_FIELDS)
        data["slug"] = data.get("slug") or slugify(data.get("title", ""))
        if await self._slug_taken(session, module_id, data["slug"]):
            return duplicate_key("Lesson", "slug", data["slug"], origin="engine.content",
                                 error_code="DUPLICATE_SLUG")
        order_index = data.setdefault("order_index", 0)
        if await self._order_taken(session, Lesson, Lesson.module_id, module_id, order_index):
            return self._duplicate_order("Lesson", order_index)

        lesson = Lesson(id=uuid4(), module_id=module_id, **data)
        session.add(lesson)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LESSON, entity_id=lesson.id,
            action=ChangeAction.CREATE, changed_by=actor_id,
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: lesson)

    async def update_lesson(
        self, session: AsyncSession, actor_id: UUID, lesson_id: UUID, data: dict
    ) -> Result[Lesson, AppError]:
        found = await self.get_lesson(session, lesson_id)
        if found.is_err():
            return found
        lesson = found.unwrap()
        changed = {k: v for k, v in _pick(data, LESSON_FIELDS).items() if getattr(lesson, k) != v}

        if "slug" in changed and await self._slug_taken(session, lesson.module_id, changed["slug"], lesson.id):
            return duplicate_key("Lesson", "slug", changed["slug"], origin="engine.content",
                                 error_code="DUPLICATE_SLUG")
        if "order_index" in changed and await self._order_taken(
            session, Lesson, Lesson.module_id, lesson.module_id, changed["order_index"], lesson.id
        ):
            return self._duplicate_order("Lesson", changed["order_index"])

        before = snapshot(lesson)
        for key, value in changed.items():
            setattr(lesson, key, value)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LESSON, entity_id=lesson.id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            before=before, after=snapshot(lesson),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: lesson)

    async def delete_lesson(self, session: AsyncSession, actor_id: UUID, lesson_id: UUID) -> Result[Lesson, AppError]:
        found = await self.get_lesson(session, lesson_id)
        if found.is_err():
            return found
        lesson = found.unwrap()
        lesson.is_active = False
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LESSON, entity_id=lesson.id,
            action=ChangeAction.DELETE, changed_by=actor_id, before=snapshot(lesson),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: lesson)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def list_steps(
        self, session: AsyncSession, lesson_id: UUID, include_inactive: bool = False
    ) -> list[Step]:
        query = select(Step).where(Step.lesson_id == lesson_id).order_by(Step.order_index)
        if not include_inactive:
            query = query.where(Step.is_active == True)
        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    def _check_content_type(data: dict) -> Result[None, AppError]:
        content_type = data.get("content_type")
        if content_type is not None and content_type not in STEP_CONTENT_TYPES:
            return validation_error(
                f"Unsupported step content type '{content_type}'",
                field="content_type",
                value=content_type,
                error_code="INVALID_STEP_CONTENT_TYPE",
                origin="engine.content",
                allowed=list(STEP_CONTENT_TYPES),
            )
        return Ok(None)

    async def create_step(
        self, session: AsyncSession, actor_id: UUID, lesson_id: UUID, data: dict
    ) -> Result[Step, AppError]:
        found = await self.get_lesson(session, lesson_id)
        if found.is_err():
            return found
        data = _pick(data, STEP_FIELDS)
        check = self._check_content_type(data)
        if check.is_err():
            return check

        if "order_index" not in data:
            current_max = await session.scalar(
                select(func.max(Step.order_index)).where(Step.lesson_id == lesson_id, Step.is_active == True)
            )
            data["order_index"] = 0 if current_max is None else current_max + 1
        elif await self._order_taken(session, Step, Step.lesson_id, lesson_id, data["order_index"]):
            return self._duplicate_order("Step", data["order_index"])

        step = Step(id=uuid4(), lesson_id=lesson_id, **data)
        session.add(step)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.STEP, entity_id=step.id,
            action=ChangeAction.CREATE, changed_by=actor_id,
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: step)

    async def update_step(
        self, session: AsyncSession, actor_id: UUID, step_id: UUID, data: dict
    ) -> Result[Step, AppError]:
        found = await fetch_one(session, Step, step_id, "Step")
        if found.is_err():
            return found
        step = found.unwrap()
        changed = {k: v for k, v in _pick(data, STEP_FIELDS).items() if getattr(step, k) != v}
        check = self._check_content_type(changed)
        if check.is_err():
            return check
        if "order_index" in changed and await self._order_taken(
            session, Step, Step.lesson_id, step.lesson_id, changed["order_index"], step.id
        ):
            return self._duplicate_order("Step", changed["order_index"])

        before = snapshot(step)
        for key, value in changed.items():
            setattr(step, key, value)
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.STEP, entity_id=step.id,
            action=ChangeAction.UPDATE, changed_by=actor_id,
            before=before, after=snapshot(step),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: step)

    async def delete_step(self, session: AsyncSession, actor_id: UUID, step_id: UUID) -> Result[Step, AppError]:
        found = await fetch_one(session, Step, step_id, "Step")
        if found.is_err():
            return found
        step = found.unwrap()
        step.is_active = False
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.STEP, entity_id=step.id,
            action=ChangeAction.DELETE, changed_by=actor_id, before=snapshot(step),
        )
        committed = await commit_or_rollback(session)
        return committed.map(lambda _: step)

    async def reorder_steps(
        self, session: AsyncSession, actor_id: UUID, lesson_id: UUID, step_ids: list[UUID]
    ) -> Result[list[Step], AppError]:
        """Rewrite step order to follow ``step_ids`` (a permutation of the active steps)."""
        found = await self.get_lesson(session, lesson_id)
        if found.is_err():
            return found
        steps = await self.list_steps(session, lesson_id)
        by_id = {step.id: step for step in steps}

        if len(step_ids) != len(set(step_ids)) or set(step_ids) != set(by_id):
            return validation_error(
                "Step ids must list every active step of the lesson exactly once",
                field="step_ids",
                origin="engine.content",
            )

        before = [str(step.id) for step in steps]
        for index, step_id in enumerate(step_ids):
            by_id[step_id].order_index = index
        self.changelog.log_change(
            session, entity_type=ChangeEntityType.LESSON, entity_id=lesson_id,
            action=ChangeAction.REORDER, changed_by=actor_id,
            diff={"steps": {"before": before, "after": [str(s) for s in step_ids]}},
        )
        committed = await commit_or_rollback(session)
        if committed.is_err():
            return committed
        log.info("steps_reordered", lesson_id=str(lesson_id), count=len(step_ids))
        return Ok([by_id[s] for s in step_ids])
