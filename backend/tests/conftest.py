"""Shared fixtures: in-memory database, API client, users and a small curriculum."""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_DEFAULT"] = "3/minute"
os.environ["RATE_LIMIT_AUTH"] = "3/minute"
os.environ["LOG_LEVEL"] = "WARNING"
for key in ("GEMINI_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
    os.environ[key] = ""

from dataclasses import dataclass, field
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table on Base.metadata
from core.database import Base, get_db
from core.security import CurrentUser, create_access_token
from engines.ai import AIDispatcher, RateLimitRule
from models.content import Level, Lesson, Module, ModulePrerequisite, Step
from models.user import Role, TeacherStudent, User


class FakeProvider:
    """Scripted AI provider; ``failures`` calls raise before replies succeed."""

    def __init__(self, name: str, reply: str = "respuesta", failures: int = 0):
        self.name = name
        self.model = f"{name}-test"
        self.reply = reply
        self.failures = failures
        self.calls = 0

    async def generate(self, prompt: str, *, temperature: float, max_tokens: int) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"{self.name} unavailable")
        return self.reply


def make_dispatcher(providers: dict, limits: dict[str, int] | None = None, clock=None, **kwargs) -> AIDispatcher:
    rules = {name: RateLimitRule(n, 60.0) for name, n in (limits or {}).items()}
    options = {"max_retries": 1, "timeout_seconds": 5.0}
    options.update(kwargs)
    if clock is not None:
        options["clock"] = clock
    return AIDispatcher(providers, rate_limits=rules, **options)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def ai_providers() -> dict:
    return {"gemini": FakeProvider("gemini", "análisis gemini"), "openai": FakeProvider("openai", "análisis openai")}


@pytest_asyncio.fixture
async def client(session_factory, ai_providers):
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.ai_dispatcher = make_dispatcher(ai_providers, limits={"gemini": 2, "openai": 2})
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

async def create_user(session: AsyncSession, role: Role, email: str | None = None) -> User:
    user = User(
        id=uuid4(),
        email=email or f"{role.value.lower()}-{uuid4().hex[:8]}@ventylab.com",
        name=role.value.title(),
        hashed_password="not-a-real-hash",
        role=role.value,
    )
    session.add(user)
    await session.commit()
    return user


def as_current(user: User) -> CurrentUser:
    return CurrentUser(id=user.id, email=user.email, role=Role(user.role))


def auth_headers(user: User) -> dict:
    token = create_access_token({"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def student(db_session) -> User:
    return await create_user(db_session, Role.STUDENT)


@pytest_asyncio.fixture
async def teacher(db_session) -> User:
    return await create_user(db_session, Role.TEACHER)


@pytest_asyncio.fixture
async def admin(db_session) -> User:
    return await create_user(db_session, Role.ADMIN)


@pytest_asyncio.fixture
async def assigned_student(db_session, teacher, student) -> User:
    db_session.add(TeacherStudent(id=uuid4(), teacher_id=teacher.id, student_id=student.id))
    await db_session.commit()
    return student


# ---------------------------------------------------------------------------
# Curriculum
# ---------------------------------------------------------------------------

@dataclass
class Curriculum:
    levels: list[Level] = field(default_factory=list)
    modules: list[Module] = field(default_factory=list)
    lessons: dict[UUID, list[Lesson]] = field(default_factory=dict)
    steps: dict[UUID, list[Step]] = field(default_factory=dict)


async def build_curriculum(
    session: AsyncSession,
    shape: list[list[int]],
    steps_per_lesson: int = 3,
) -> Curriculum:
    """``shape[i][j]`` is the lesson count of module j in level i."""
    tree = Curriculum()
    for level_idx, module_sizes in enumerate(shape):
        level = Level(id=uuid4(), title=f"Nivel {level_idx + 1}", order_index=level_idx)
        session.add(level)
        tree.levels.append(level)
        for module_idx, lesson_count in enumerate(module_sizes):
            module = Module(
                id=uuid4(),
                level_id=level.id,
                title=f"Módulo {level_idx + 1}.{module_idx + 1}",
                order_index=module_idx,
            )
            session.add(module)
            tree.modules.append(module)
            tree.lessons[module.id] = []
            for lesson_idx in range(lesson_count):
                lesson = Lesson(
                    id=uuid4(),
                    module_id=module.id,
                    title=f"Lección {lesson_idx + 1}",
                    slug=f"leccion-{level_idx}-{module_idx}-{lesson_idx}",
                    order_index=lesson_idx,
                )
                session.add(lesson)
                tree.lessons[module.id].append(lesson)
                tree.steps[lesson.id] = []
                for step_idx in range(steps_per_lesson):
                    step = Step(
                        id=uuid4(),
                        lesson_id=lesson.id,
                        title=f"Paso {step_idx + 1}",
                        content_type="text",
                        content={"markdown": f"contenido {step_idx}"},
                        order_index=step_idx,
                    )
                    session.add(step)
                    tree.steps[lesson.id].append(step)
    await session.commit()
    return tree


async def add_module_prerequisite(session: AsyncSession, module: Module, prerequisite: Module) -> None:
    session.add(ModulePrerequisite(id=uuid4(), module_id=module.id, prerequisite_id=prerequisite.id))
    await session.commit()


@pytest_asyncio.fixture
async def curriculum(db_session) -> Curriculum:
    """Two levels: level 1 has modules of 2 and 1 lessons, level 2 one module of 2."""
    return await build_curriculum(db_session, [[2, 1], [2]])
