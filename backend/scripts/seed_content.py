#!/usr/bin/env python3
"""Seed the curriculum and demo accounts.

Reads levels, modules, lessons and steps from data/content/curriculum.yaml.
Prerequisites in the YAML refer to other entries by their ``key``.

Run with: python3 -m scripts.seed_content [--reset]
"""
import argparse
import asyncio
from pathlib import Path
from uuid import uuid4
import yaml

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db_session, engine, Base
from engines.content import slugify
from models.content import Level, LevelPrerequisite, Lesson, Module, ModulePrerequisite, Step
from models.user import Role, TeacherStudent, User
from core.security import get_password_hash


CONTENT_FILE = Path(__file__).parent.parent.parent / "data" / "content" / "curriculum.yaml"

DEMO_USERS = [
    {"email": "admin@ventylab.dev", "name": "Admin", "role": Role.ADMIN},
    {"email": "teacher@ventylab.dev", "name": "Docente", "role": Role.TEACHER},
    {"email": "student@ventylab.dev", "name": "Estudiante", "role": Role.STUDENT},
]
DEMO_PASSWORD = "ventylab123"


async def clear_content(session: AsyncSession):
    """Clear existing curriculum data."""
    await session.execute(delete(Step))
    await session.execute(delete(Lesson))
    await session.execute(delete(ModulePrerequisite))
    await session.execute(delete(Module))
    await session.execute(delete(LevelPrerequisite))
    await session.execute(delete(Level))
    await session.flush()
    print("Cleared existing curriculum")


def load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


async def create_content(session: AsyncSession, data: dict):
    """Create levels → modules → lessons → steps, then prerequisite edges."""
    level_ids: dict[str, object] = {}
    module_ids: dict[str, object] = {}
    level_edges: list[tuple[str, str]] = []
    module_edges: list[tuple[str, str]] = []

    for level_idx, level_def in enumerate(data.get("levels", [])):
        level = Level(
            id=uuid4(),
            title=level_def["title"],
            description=level_def.get("description"),
            order_index=level_def.get("order", level_idx),
            is_optional=level_def.get("optional", False),
        )
        session.add(level)
        level_ids[level_def["key"]] = level.id
        level_edges.extend((level_def["key"], p) for p in level_def.get("prerequisites", []))
        print(f"Level: {level.title}")

        for module_idx, module_def in enumerate(level_def.get("modules", [])):
            module = Module(
                id=uuid4(),
                level_id=level.id,
                title=module_def["title"],
                description=module_def.get("description"),
                difficulty=module_def.get("difficulty", "beginner"),
                estimated_duration_min=module_def.get("duration", 30),
                order_index=module_idx,
                extra_data={"key": module_def["key"]},
            )
            session.add(module)
            module_ids[module_def["key"]] = module.id
            module_edges.extend((module_def["key"], p) for p in module_def.get("prerequisites", []))
            print(f"  Module: {module.title}")

            for lesson_idx, lesson_def in enumerate(module_def.get("lessons", [])):
                lesson = Lesson(
                    id=uuid4(),
                    module_id=module.id,
                    title=lesson_def["title"],
                    slug=lesson_def.get("slug") or slugify(lesson_def["title"]),
                    description=lesson_def.get("description"),
                    order_index=lesson_idx,
                    estimated_time_min=lesson_def.get("estimated_time", 10),
                    requires_quiz=lesson_def.get("requires_quiz", False),
                    passing_score=lesson_def.get("passing_score"),
                )
                session.add(lesson)
                for step_idx, step_def in enumerate(lesson_def.get("steps", [])):
                    session.add(Step(
                        id=uuid4(),
                        lesson_id=lesson.id,
                        title=step_def.get("title"),
                        content_type=step_def.get("type", "text"),
                        content=step_def.get("content", {}),
                        order_index=step_idx,
                    ))
                print(f"    Lesson: {lesson.title} ({len(lesson_def.get('steps', []))} steps)")

    await session.flush()

    for level_key, prereq_key in level_edges:
        session.add(LevelPrerequisite(
            id=uuid4(),
            level_id=level_ids[level_key],
            prerequisite_level_id=level_ids[prereq_key],
        ))
    for module_key, prereq_key in module_edges:
        session.add(ModulePrerequisite(
            id=uuid4(),
            module_id=module_ids[module_key],
            prerequisite_id=module_ids[prereq_key],
        ))
    print(f"Prerequisites: {len(level_edges)} level, {len(module_edges)} module")


async def create_demo_users(session: AsyncSession):
    """Create demo accounts (skipping existing emails) and assign the student."""
    users: dict[Role, User] = {}
    for demo in DEMO_USERS:
        result = await session.execute(select(User).where(User.email == demo["email"]))
        user = result.scalar_one_or_none()
        if user is None:
            user = User(
                id=uuid4(),
                email=demo["email"],
                name=demo["name"],
                hashed_password=get_password_hash(DEMO_PASSWORD),
                role=demo["role"].value,
            )
            session.add(user)
            print(f"User: {user.email} ({demo['role'].value})")
        users[demo["role"]] = user
    await session.flush()

    teacher, student = users[Role.TEACHER], users[Role.STUDENT]
    result = await session.execute(
        select(TeacherStudent.id).where(
            TeacherStudent.teacher_id == teacher.id,
            TeacherStudent.student_id == student.id,
        )
    )
    if result.first() is None:
        session.add(TeacherStudent(id=uuid4(), teacher_id=teacher.id, student_id=student.id))


async def main(reset: bool = False):
    """Run the content seeder."""
    print("Creating tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    data = load_yaml(CONTENT_FILE)
    if not data:
        print(f"No content found at {CONTENT_FILE}")
        return

    print("\nSeeding curriculum...")
    async with get_db_session() as session:
        existing = await session.scalar(select(Level.id).limit(1))
        if existing is not None and not reset:
            print("Curriculum already present; pass --reset to replace it")
        else:
            await clear_content(session)
            await create_content(session, data)
        await create_demo_users(session)
        await session.commit()
        print("\n✓ Seeding complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed VentyLab content and demo users")
    parser.add_argument("--reset", action="store_true", help="Replace existing curriculum")
    args = parser.parse_args()
    asyncio.run(main(reset=args.reset))
