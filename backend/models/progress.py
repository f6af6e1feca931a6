"""Learner progress.

``UserProgress`` (per module) and ``LessonCompletion`` (per lesson) are the
canonical records. ``Progress`` is the earlier single-table schema, kept
as the source of the one-time reconciliation in
``engines.legacy_progress``.
"""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Boolean, Index, Float

from core.database import Base, GUID, utcnow


class ProgressStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class UserProgress(Base):
    """Module-level aggregate, recomputed from LessonCompletion rows."""
    __tablename__ = "user_progress"
    __table_args__ = (
        Index("ix_user_progress_user_module", "user_id", "module_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    user_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    module_id = Column(GUID, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=ProgressStatus.NOT_STARTED.value)
    is_module_completed = Column(Boolean, default=False, nullable=False)
    completed_lessons_count = Column(Integer, default=0, nullable=False)
    total_lessons = Column(Integer, default=0, nullable=False)
    progress_percentage = Column(Integer, default=0, nullable=False)  # 0-100, floored
    time_spent = Column(Integer, default=0, nullable=False)  # seconds
    last_accessed_lesson_id = Column(GUID, ForeignKey("lessons.id", ondelete="SET NULL"))
    last_accessed_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LessonCompletion(Base):
    """Per (user, lesson) record; completion is only ever set explicitly."""
    __tablename__ = "lesson_completions"
    __table_args__ = (
        Index("ix_lesson_completions_user_lesson", "user_id", "lesson_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    user_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lesson_id = Column(GUID, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    current_step_index = Column(Integer, default=0, nullable=False)  # 0-based
    total_steps = Column(Integer, default=1, nullable=False)
    time_spent = Column(Integer, default=0, nullable=False)  # seconds
    last_accessed = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Progress(Base):
    """Legacy per-lesson progress row."""
    __tablename__ = "progress"
    __table_args__ = (
        Index("ix_progress_user_lesson", "user_id", "lesson_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    user_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    module_id = Column(GUID, ForeignKey("modules.id", ondelete="CASCADE"), nullable=True)
    lesson_id = Column(GUID, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=True)
    completed = Column(Boolean, default=False, nullable=False)
    completion_percentage = Column(Float, default=0.0, nullable=False)
    time_spent = Column(Integer, default=0, nullable=False)
    current_step = Column(Integer, default=0)
    total_steps = Column(Integer, default=1)
    last_access = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
