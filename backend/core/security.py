"""Authentication and role checks.

JWT bearer tokens (python-jose) carry the user id in ``sub``; passwords are
hashed with argon2 through pwdlib. SUPERUSER satisfies every role check.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import jwt
from jose.exceptions import JWTError
from pwdlib import PasswordHash
from pwdlib.hashers.argon2 import Argon2Hasher
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import get_db
from core.errors import (
    AppError,
    AuthErrorMapper,
    Err,
    Ok,
    Result,
    account_disabled,
    insufficient_permissions,
    raise_error,
    raise_result,
    token_invalid,
    token_missing,
)
from core.logging import auth_logger
from models.user import Role, User

log = auth_logger()

password_hash = PasswordHash((Argon2Hasher(),))
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)
_auth_mapper = AuthErrorMapper("core.security")


@dataclass(slots=True, frozen=True)
class CurrentUser:
    """The authenticated caller, as seen by services."""
    id: UUID
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPERUSER)

    @property
    def is_teacher(self) -> bool:
        return self.role == Role.TEACHER

    @property
    def is_student(self) -> bool:
        return self.role == Role.STUDENT


def get_password_hash(password: str) -> str:
    return password_hash.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return password_hash.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = dict(data)
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


def decode_access_token(token: str) -> Result[dict, AppError]:
    try:
        payload = jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError as e:
        return Err(_auth_mapper.map_exception(e))
    if not payload.get("sub"):
        return token_invalid("missing subject", origin="core.security")
    return Ok(payload)


async def get_current_user(
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Resolve the bearer token into an active user (401 otherwise)."""
    if not token:
        raise_error(token_missing(origin="core.security").error)

    decoded = decode_access_token(token)
    raise_result(decoded)

    try:
        user_id = UUID(decoded.unwrap()["sub"])
    except ValueError:
        raise_error(token_invalid("malformed subject", origin="core.security").error)

    user = await db.get(User, user_id)
    if user is None:
        raise_error(token_invalid("unknown user", origin="core.security").error)
    if not user.is_active:
        raise_error(account_disabled(str(user_id), origin="core.security").error)

    return CurrentUser(id=user.id, email=user.email, role=Role(user.role))


def get_current_user_id(user: CurrentUser = Depends(get_current_user)) -> UUID:
    return user.id


def require_roles(*roles: Role):
    """Dependency factory allowing only ``roles`` (and SUPERUSER)."""
    allowed = set(roles) | {Role.SUPERUSER}

    async def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            log.warning("role_denied", user_id=str(user.id), role=user.role.value,
                        required=[r.value for r in roles])
            raise_error(insufficient_permissions(
                "access this resource",
                user_id=str(user.id),
                origin="core.security",
            ).error)
        return user

    return dependency


require_teacher_plus = require_roles(Role.TEACHER, Role.ADMIN)
require_admin = require_roles(Role.ADMIN)
