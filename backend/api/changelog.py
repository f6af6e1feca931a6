"""Changelog API (teachers see their own changes, admins see all)."""
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.errors import invalid_date, raise_error, raise_result, validation_error
from core.responses import MAX_LIMIT, PageParams, envelope, page_params, paginated
from core.security import CurrentUser, get_current_user
from engines.changelog import ChangelogFilters, ChangelogService, serialize_entry
from models.audit import ChangeAction, ChangeEntityType

router = APIRouter()
changelog = ChangelogService()


def _entity_type(value: str | None) -> ChangeEntityType | None:
    if value is None:
        return None
    try:
        return ChangeEntityType(value)
    except ValueError:
        raise_error(validation_error(
            f"Invalid entity type '{value}'",
            field="entityType",
            value=value,
            origin="api.changelog",
            allowed=[t.value for t in ChangeEntityType],
        ).error)


def _action(value: str | None) -> ChangeAction | None:
    if value is None:
        return None
    try:
        return ChangeAction(value)
    except ValueError:
        raise_error(validation_error(
            f"Invalid action '{value}'",
            field="action",
            value=value,
            origin="api.changelog",
            allowed=[a.value for a in ChangeAction],
        ).error)


def _date(field: str, value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise_error(invalid_date(field, value, origin="api.changelog").error)
    # Stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@router.get("")
async def list_changes(
    entity_type: str | None = Query(None, alias="entityType"),
    entity_id: UUID | None = Query(None, alias="entityId"),
    action: str | None = Query(None),
    changed_by: UUID | None = Query(None, alias="changedBy"),
    from_date: str | None = Query(None, alias="fromDate"),
    to_date: str | None = Query(None, alias="toDate"),
    paging: PageParams = Depends(page_params),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filters = ChangelogFilters(
        entity_type=_entity_type(entity_type),
        entity_id=entity_id,
        action=_action(action),
        changed_by=changed_by,
        from_date=_date("fromDate", from_date),
        to_date=_date("toDate", to_date),
    )
    result = await changelog.get_changelog(db, user, filters, paging.page, paging.limit)
    raise_result(result)
    entries, total = result.unwrap()
    return paginated([serialize_entry(e) for e in entries], paging.page, paging.limit, total)


@router.get("/recent")
async def recent_changes(
    limit: int = Query(20, ge=1),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await changelog.get_recent_changes(db, user, min(limit, MAX_LIMIT))
    raise_result(result)
    return envelope([serialize_entry(e) for e in result.unwrap()])


@router.get("/stats")
async def change_stats(
    from_date: str = Query(..., alias="fromDate"),
    to_date: str = Query(..., alias="toDate"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await changelog.get_change_stats(
        db, user, _date("fromDate", from_date), _date("toDate", to_date)
    )
    raise_result(result)
    return envelope(result.unwrap())


@router.get("/{entity_type}/{entity_id}")
async def entity_history(
    entity_type: str,
    entity_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await changelog.get_entity_history(db, user, _entity_type(entity_type), entity_id)
    raise_result(result)
    return envelope([serialize_entry(e) for e in result.unwrap()])
