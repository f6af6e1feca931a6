"""Database Module with Monadic Error Handling

Async engine/session management, the portable GUID column type, and
Result-returning helpers (fetch, create, update, upsert).
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, TypeVar
from uuid import UUID as PyUUID

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator, CHAR

from core.config import settings
from core.errors import (
    AppError,
    Ok,
    Err,
    Result,
    not_found,
    DatabaseErrorMapper,
)

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GUID(TypeDecorator):
    """Platform-agnostic GUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as CHAR(32).
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, PyUUID) else PyUUID(str(value))
        if isinstance(value, PyUUID):
            return value.hex
        return PyUUID(str(value)).hex

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, PyUUID):
            return value
        return PyUUID(value)


engine_kwargs = {
    "echo": settings.LOG_SQL,
}

if "sqlite" not in settings.DATABASE_URL:
    engine_kwargs.update({
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
    })

engine = create_async_engine(settings.DATABASE_URL, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()

_db_mapper = DatabaseErrorMapper("database")


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency that yields database session."""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_db_session() -> AsyncIterator[AsyncSession]:
    """Context manager for scripts running outside a request."""
    async with AsyncSessionLocal() as session:
        yield session


def dialect_insert(session: AsyncSession):
    """Return the dialect's ``insert`` construct (supports ON CONFLICT)."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def upsert(
    session: AsyncSession,
    model: type,
    values: dict,
    conflict_columns: list[str],
    update: dict | None = None,
) -> None:
    """INSERT ... ON CONFLICT DO UPDATE keyed on a unique index.

    ``update`` maps column names to values or to SQL expressions; a callable
    value receives the ``excluded`` namespace so increments can be written as
    ``lambda ex: Model.time_spent + ex.time_spent``. Does not commit.
    """
    insert = dialect_insert(session)
    stmt = insert(model).values(**values)
    set_ = {}
    for column, value in (update or {}).items():
        set_[column] = value(stmt.excluded) if callable(value) else value
    if set_:
        stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
    await session.execute(stmt)


async def fetch_one(
    session: AsyncSession,
    model: type[T],
    id: PyUUID,
    entity_name: str | None = None,
    active_only: bool = False,
) -> Result[T, AppError]:
    """Fetch single entity by ID.

    With ``active_only`` a soft-deleted row counts as missing.

    Returns:
        Ok(entity) if found
        Err(not_found) if not found
        Err(mapped database error) on database failure
    """
    name = entity_name or model.__name__
    try:
        result = await session.execute(select(model).where(model.id == id))
        entity = result.scalar_one_or_none()
        if entity is None or (active_only and not entity.is_active):
            return not_found(name, id, origin="database.fetch_one")
        return Ok(entity)
    except SQLAlchemyError as e:
        return Err(_db_mapper.map_exception(e))


async def create_entity(
    session: AsyncSession,
    entity: T,
) -> Result[T, AppError]:
    """Add and commit ``entity``; rolls back and maps the error on failure."""
    try:
        session.add(entity)
        await session.commit()
        await session.refresh(entity)
        return Ok(entity)
    except SQLAlchemyError as e:
        await session.rollback()
        return Err(_db_mapper.map_exception(e))


async def commit_or_rollback(session: AsyncSession) -> Result[None, AppError]:
    """Commit the unit of work, rolling back on failure."""
    try:
        await session.commit()
        return Ok(None)
    except SQLAlchemyError as e:
        await session.rollback()
        return Err(_db_mapper.map_exception(e))
