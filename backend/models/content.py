"""Curriculum content: Level → Module → Lesson → Step.

Prerequisite edges exist between levels and between modules; both graphs
are kept acyclic by the content service.
"""
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Integer, Boolean, Index, JSON
from sqlalchemy.orm import relationship

from core.database import Base, GUID, utcnow


class Level(Base):
    """Top-level grouping (e.g. 'Beginner', 'Intermediate')."""
    __tablename__ = "levels"
    __table_args__ = (
        Index("ix_levels_order", "order_index"),
        Index("ix_levels_title", "title", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    order_index = Column(Integer, nullable=False, default=0)
    is_optional = Column(Boolean, default=False, nullable=False)  # Optional levels never gate progression
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    modules = relationship("Module", back_populates="level", order_by="Module.order_index")
    prerequisites = relationship(
        "LevelPrerequisite",
        foreign_keys="LevelPrerequisite.level_id",
        cascade="all, delete-orphan",
    )


class LevelPrerequisite(Base):
    __tablename__ = "level_prerequisites"
    __table_args__ = (
        Index("ix_level_prerequisites_pair", "level_id", "prerequisite_level_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    level_id = Column(GUID, ForeignKey("levels.id", ondelete="CASCADE"), nullable=False)
    prerequisite_level_id = Column(GUID, ForeignKey("levels.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Module(Base):
    """Topical unit within a level (e.g. 'Ventilation modes')."""
    __tablename__ = "modules"
    __table_args__ = (
        Index("ix_modules_level_order", "level_id", "order_index"),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    level_id = Column(GUID, ForeignKey("levels.id", ondelete="SET NULL"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    difficulty = Column(String(20), nullable=False, default="beginner")  # beginner, intermediate, advanced
    estimated_duration_min = Column(Integer, default=30)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    extra_data = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    level = relationship("Level", back_populates="modules")
    lessons = relationship("Lesson", back_populates="module", cascade="all, delete-orphan", order_by="Lesson.order_index")
    prerequisites = relationship(
        "ModulePrerequisite",
        foreign_keys="ModulePrerequisite.module_id",
        cascade="all, delete-orphan",
    )


class ModulePrerequisite(Base):
    __tablename__ = "module_prerequisites"
    __table_args__ = (
        Index("ix_module_prerequisites_pair", "module_id", "prerequisite_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    module_id = Column(GUID, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    prerequisite_id = Column(GUID, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Lesson(Base):
    """Single learning unit (a 'page') with ordered steps."""
    __tablename__ = "lessons"
    __table_args__ = (
        Index("ix_lessons_module_order", "module_id", "order_index"),
        Index("ix_lessons_module_slug", "module_id", "slug", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    module_id = Column(GUID, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    description = Column(Text)
    order_index = Column(Integer, nullable=False, default=0)
    estimated_time_min = Column(Integer, default=10)
    requires_quiz = Column(Boolean, default=False, nullable=False)
    requires_case = Column(Boolean, default=False, nullable=False)
    passing_score = Column(Integer)  # 0-100, only meaningful with requires_quiz
    is_published = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    module = relationship("Module", back_populates="lessons")
    steps = relationship("Step", back_populates="lesson", cascade="all, delete-orphan", order_by="Step.order_index")


STEP_CONTENT_TYPES = ("text", "image", "video", "quiz", "exercise", "summary", "case")


class Step(Base):
    """Atomic content block ('card') within a lesson."""
    __tablename__ = "steps"
    __table_args__ = (
        Index("ix_steps_lesson_order", "lesson_id", "order_index"),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    lesson_id = Column(GUID, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255))
    content_type = Column(String(20), nullable=False, default="text")
    content = Column(JSON, default=dict)
    order_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    lesson = relationship("Lesson", back_populates="steps")
