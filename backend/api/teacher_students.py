"""Teacher/student assignments API

Assignments decide which students a teacher may create overrides for.
Only admins assign; teachers list their own students.
"""
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import commit_or_rollback, create_entity, fetch_one, get_db
from core.errors import duplicate_key, not_found, raise_error, raise_result, validation_error
from core.logging import api_logger
from core.responses import envelope
from core.security import CurrentUser, require_admin, require_teacher_plus
from models.user import Role, TeacherStudent, User

router = APIRouter()
log = api_logger()


class AssignmentCreate(BaseModel):
    teacher_id: UUID
    student_id: UUID


class StudentSummary(BaseModel):
    id: UUID
    email: str
    name: str | None
    is_active: bool

    class Config:
        from_attributes = True


async def _user_with_role(db: AsyncSession, user_id: UUID, roles: tuple[Role, ...], field: str) -> User:
    found = await fetch_one(db, User, user_id, "User")
    raise_result(found)
    user = found.unwrap()
    if user.role not in {r.value for r in roles}:
        raise_error(validation_error(
            f"User {user_id} does not have the required role",
            field=field,
            value=str(user_id),
            error_code="INVALID_ROLE",
            origin="api.teacher_students",
        ).error)
    return user


@router.post("", status_code=status.HTTP_201_CREATED)
async def assign_student(
    payload: AssignmentCreate,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _user_with_role(db, payload.teacher_id, (Role.TEACHER,), "teacher_id")
    await _user_with_role(db, payload.student_id, (Role.STUDENT,), "student_id")

    existing = await db.execute(
        select(TeacherStudent.id).where(
            TeacherStudent.teacher_id == payload.teacher_id,
            TeacherStudent.student_id == payload.student_id,
        )
    )
    if existing.first() is not None:
        raise_error(duplicate_key(
            "TeacherStudent", "student_id", str(payload.student_id),
            origin="api.teacher_students", error_code="ASSIGNMENT_EXISTS",
        ).error)

    created = await create_entity(db, TeacherStudent(
        id=uuid4(),
        teacher_id=payload.teacher_id,
        student_id=payload.student_id,
    ))
    raise_result(created)
    log.info("student_assigned", teacher_id=str(payload.teacher_id), student_id=str(payload.student_id))
    return envelope(
        {"teacher_id": payload.teacher_id, "student_id": payload.student_id},
        "Student assigned",
    )


@router.delete("/{teacher_id}/{student_id}")
async def unassign_student(
    teacher_id: UUID,
    student_id: UUID,
    user: CurrentUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(TeacherStudent).where(
            TeacherStudent.teacher_id == teacher_id,
            TeacherStudent.student_id == student_id,
        )
    )
    if result.rowcount == 0:
        raise_error(not_found("TeacherStudent", student_id, origin="api.teacher_students").error)
    raise_result(await commit_or_rollback(db))
    log.info("student_unassigned", teacher_id=str(teacher_id), student_id=str(student_id))
    return envelope(None, "Student unassigned")


@router.get("/my-students")
async def my_students(
    user: CurrentUser = Depends(require_teacher_plus),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User)
        .join(TeacherStudent, TeacherStudent.student_id == User.id)
        .where(TeacherStudent.teacher_id == user.id)
        .order_by(User.email)
    )
    return envelope([StudentSummary.model_validate(s) for s in result.scalars().all()])
