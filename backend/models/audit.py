"""Per-student content overrides and the content changelog."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Index, JSON

from core.database import Base, GUID, utcnow


class OverrideEntityType(str, Enum):
    LEVEL = "LEVEL"
    LESSON = "LESSON"
    CARD = "CARD"


class ContentOverride(Base):
    """A teacher's customisation of one entity for exactly one student."""
    __tablename__ = "content_overrides"
    __table_args__ = (
        Index(
            "ix_content_overrides_student_entity",
            "student_id", "entity_type", "entity_id",
            unique=True,
        ),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    student_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(GUID, nullable=False)
    override_data = Column(JSON, nullable=False, default=dict)
    created_by = Column(GUID, ForeignKey("users.id", ondelete="SET NULL"))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ChangeEntityType(str, Enum):
    LEVEL = "Level"
    MODULE = "Module"
    LESSON = "Lesson"
    STEP = "Step"
    CONTENT_OVERRIDE = "ContentOverride"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REORDER = "reorder"


class ChangeLog(Base):
    """Append-only audit entry for a content mutation."""
    __tablename__ = "change_logs"
    __table_args__ = (
        Index("ix_change_logs_entity", "entity_type", "entity_id"),
        Index("ix_change_logs_changed_by", "changed_by"),
        Index("ix_change_logs_changed_at", "changed_at"),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(GUID, nullable=False)
    action = Column(String(20), nullable=False)
    changed_by = Column(GUID, ForeignKey("users.id", ondelete="SET NULL"))
    changed_at = Column(DateTime, default=utcnow, nullable=False)
    diff = Column(JSON)
