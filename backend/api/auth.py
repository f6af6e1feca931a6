"""Authentication API

Registration, password login (OAuth2 form) and the current-user profile.
Self-registration always creates STUDENT accounts; elevated roles are
granted by an admin.
"""
from datetime import timedelta
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import create_entity, fetch_one, get_db
from core.errors import duplicate_key, invalid_credentials, raise_error, raise_result
from core.logging import auth_logger
from core.middleware import auth_rate_limit
from core.responses import envelope
from core.security import (
    CurrentUser,
    create_access_token,
    get_current_user,
    get_password_hash,
    verify_password,
)
from models.user import Role, User

router = APIRouter()
log = auth_logger()


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: str | None = None


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: str | None
    role: str
    is_active: bool

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str


@router.post("/register", status_code=status.HTTP_201_CREATED)
@auth_rate_limit
async def register(request: Request, user_data: UserCreate, db: AsyncSession = Depends(get_db)):
    """Register a new student account."""
    result = await db.execute(select(User.id).where(User.email == user_data.email))
    if result.first() is not None:
        raise_error(duplicate_key(
            "User", "email", user_data.email,
            origin="api.auth.register", error_code="EMAIL_TAKEN",
        ).error)

    created = await create_entity(db, User(
        id=uuid4(),
        email=user_data.email,
        name=user_data.name,
        hashed_password=get_password_hash(user_data.password),
        role=Role.STUDENT.value,
    ))
    raise_result(created)
    user = created.unwrap()
    log.info("user_registered", user_id=str(user.id))
    return envelope(UserResponse.model_validate(user), "User registered")


@router.post("/token", response_model=Token)
@auth_rate_limit
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
):
    """Exchange email/password for a bearer token (OAuth2 password flow)."""
    result = await db.execute(select(User).where(User.email == form_data.username))
    user = result.scalar_one_or_none()

    if not user or not verify_password(form_data.password, user.hashed_password):
        log.warning("login_failed", email=form_data.username)
        raise_error(invalid_credentials(origin="api.auth.login").error)

    access_token = create_access_token(
        data={"sub": str(user.id), "role": user.role},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}


@router.get("/me")
async def me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await fetch_one(db, User, user.id, "User")
    raise_result(result)
    return envelope(UserResponse.model_validate(result.unwrap()))
