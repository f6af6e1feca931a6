"""Accounts, roles and teacher/student assignments."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship

from core.database import Base, GUID, utcnow


class Role(str, Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"
    SUPERUSER = "SUPERUSER"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_email", "email", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False)
    name = Column(String(255))
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=Role.STUDENT.value)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)


class TeacherStudent(Base):
    """A student assigned to a teacher; gates who may manage overrides."""
    __tablename__ = "teacher_students"
    __table_args__ = (
        Index("ix_teacher_students_pair", "teacher_id", "student_id", unique=True),
    )

    id = Column(GUID, primary_key=True, default=uuid4)
    teacher_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    teacher = relationship("User", foreign_keys=[teacher_id])
    student = relationship("User", foreign_keys=[student_id])
