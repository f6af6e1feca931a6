"""Module unlock rules.

A module is accessible when:
- every active module of each prerequisite level of its level is COMPLETED
- every active prerequisite module is COMPLETED

Optional levels never gate anything. A prerequisite level without active
modules is treated as satisfied.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import AppError, Ok, Result, map_db_errors, not_found
from core.logging import progress_logger
from models.content import Level, LevelPrerequisite, Module, ModulePrerequisite
from models.progress import ProgressStatus, UserProgress

log = progress_logger()


@dataclass(slots=True)
class MissingPrerequisite:
    module_id: UUID
    title: str
    level_id: UUID | None
    via: str  # "level" or "module"


@dataclass(slots=True)
class AccessDecision:
    module_id: UUID
    can_access: bool
    reason: str
    missing_prerequisites: list[MissingPrerequisite] = field(default_factory=list)


@dataclass(slots=True)
class UnlockedModule:
    module_id: UUID
    title: str
    level_id: UUID | None
    order: int
    is_completed: bool


@dataclass(slots=True)
class LevelUnlockStatus:
    level_id: UUID
    title: str
    order: int
    is_unlocked: bool
    total_modules: int
    completed_modules: int
    is_completed: bool


class UnlockGraph:
    """In-memory view of the prerequisite graphs for one learner."""

    def __init__(
        self,
        modules: dict[UUID, Module],
        module_prereqs: dict[UUID, set[UUID]],
        level_prereqs: dict[UUID, set[UUID]],
        optional_levels: set[UUID],
        completed: set[UUID],
    ):
        self.modules = modules
        self.module_prereqs = module_prereqs
        self.level_prereqs = level_prereqs
        self.optional_levels = optional_levels
        self.completed = completed
        self.modules_by_level: dict[UUID, list[Module]] = defaultdict(list)
        for module in modules.values():
            if module.level_id is not None:
                self.modules_by_level[module.level_id].append(module)
        self._level_memo: dict[UUID, bool] = {}

    def level_completed(self, level_id: UUID) -> bool:
        return all(m.id in self.completed for m in self.modules_by_level.get(level_id, ()))

    def level_accessible(self, level_id: UUID | None) -> bool:
        if level_id is None:
            return True
        if level_id not in self._level_memo:
            self._level_memo[level_id] = all(
                self.level_completed(prereq)
                for prereq in self.level_prereqs.get(level_id, ())
                if prereq not in self.optional_levels
            )
        return self._level_memo[level_id]

    def missing_for(self, module: Module) -> list[MissingPrerequisite]:
        missing = []
        if module.level_id is not None:
            for prereq_level in sorted(self.level_prereqs.get(module.level_id, ()), key=str):
                if prereq_level in self.optional_levels:
                    continue
                for m in self.modules_by_level.get(prereq_level, ()):
                    if m.id not in self.completed:
                        missing.append(MissingPrerequisite(m.id, m.title, m.level_id, "level"))
        for prereq_id in sorted(self.module_prereqs.get(module.id, ()), key=str):
            prereq = self.modules.get(prereq_id)
            if prereq is not None and prereq_id not in self.completed:
                missing.append(MissingPrerequisite(prereq.id, prereq.title, prereq.level_id, "module"))
        return missing

    def is_unlocked(self, module: Module) -> bool:
        if not self.level_accessible(module.level_id):
            return False
        return all(
            p in self.completed or p not in self.modules
            for p in self.module_prereqs.get(module.id, ())
        )


class UnlockService:
    """Batch-loads the graphs and answers unlock questions."""

    __slots__ = ()

    async def _graph(self, session: AsyncSession, user_id: UUID) -> UnlockGraph:
        module_rows = await session.execute(
            select(Module, ModulePrerequisite.prerequisite_id)
            .select_from(Module)
            .outerjoin(ModulePrerequisite, ModulePrerequisite.module_id == Module.id)
            .outerjoin(Level, Module.level_id == Level.id)
            .where(Module.is_active == True)
            .order_by(Level.order_index, Module.order_index)
        )
        modules: dict[UUID, Module] = {}
        module_prereqs: dict[UUID, set[UUID]] = defaultdict(set)
        for module, prereq_id in module_rows.all():
            modules[module.id] = module
            if prereq_id is not None:
                module_prereqs[module.id].add(prereq_id)

        level_rows = await session.execute(
            select(LevelPrerequisite.level_id, LevelPrerequisite.prerequisite_level_id, Level.is_optional)
            .join(Level, Level.id == LevelPrerequisite.prerequisite_level_id)
        )
        level_prereqs: dict[UUID, set[UUID]] = defaultdict(set)
        optional_levels: set[UUID] = set()
        for level_id, prereq_level_id, is_optional in level_rows.all():
            level_prereqs[level_id].add(prereq_level_id)
            if is_optional:
                optional_levels.add(prereq_level_id)

        completed_rows = await session.execute(
            select(UserProgress.module_id).where(
                UserProgress.user_id == user_id,
                UserProgress.status == ProgressStatus.COMPLETED.value,
            )
        )
        completed = set(completed_rows.scalars().all())
        return UnlockGraph(modules, module_prereqs, level_prereqs, optional_levels, completed)

    @map_db_errors("engine.unlock")
    async def can_access_module(
        self, session: AsyncSession, user_id: UUID, module_id: UUID
    ) -> Result[AccessDecision, AppError]:
        module = await session.get(Module, module_id)
        if module is None:
            return not_found("Module", module_id, origin="engine.unlock")
        if not module.is_active:
            return Ok(AccessDecision(module_id, False, "Module is not active"))

        graph = await self._graph(session, user_id)
        missing = graph.missing_for(module)
        if missing:
            log.debug("module_locked", user_id=str(user_id), module_id=str(module_id), missing=len(missing))
            return Ok(AccessDecision(
                module_id,
                False,
                f"Complete {len(missing)} prerequisite module(s) first",
                missing,
            ))
        return Ok(AccessDecision(module_id, True, "All prerequisites completed"))

    @map_db_errors("engine.unlock")
    async def get_unlocked_modules(
        self, session: AsyncSession, user_id: UUID
    ) -> Result[list[UnlockedModule], AppError]:
        graph = await self._graph(session, user_id)
        return Ok([
            UnlockedModule(m.id, m.title, m.level_id, m.order_index, m.id in graph.completed)
            for m in graph.modules.values()
            if graph.is_unlocked(m)
        ])

    @map_db_errors("engine.unlock")
    async def get_level_unlock_status(
        self, session: AsyncSession, user_id: UUID
    ) -> Result[list[LevelUnlockStatus], AppError]:
        graph = await self._graph(session, user_id)
        levels = await session.execute(
            select(Level).where(Level.is_active == True).order_by(Level.order_index)
        )
        statuses = []
        for level in levels.scalars().all():
            modules = graph.modules_by_level.get(level.id, [])
            done = sum(1 for m in modules if m.id in graph.completed)
            statuses.append(LevelUnlockStatus(
                level_id=level.id,
                title=level.title,
                order=level.order_index,
                is_unlocked=graph.level_accessible(level.id),
                total_modules=len(modules),
                completed_modules=done,
                is_completed=bool(modules) and done == len(modules),
            ))
        return Ok(statuses)
