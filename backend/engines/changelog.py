"""Changelog Engine

Append-only audit trail of content mutations and its role-scoped query
surface:
- students have no access
- teachers only ever see their own changes
- admins and superusers see everything
"""
import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import utcnow
from core.errors import (
    AppError,
    Ok,
    Result,
    insufficient_permissions,
    map_db_errors,
    validation_error,
)
from core.logging import engine_logger
from core.responses import MAX_LIMIT, clamp_page
from models.audit import ChangeAction, ChangeEntityType, ChangeLog
from models.user import Role

log = engine_logger()

IGNORED_FIELDS = frozenset({
    "id",
    "created_at",
    "updated_at",
    "last_modified_at",
    "last_modified_by",
})


def _jsonable(value: Any) -> Any:
    """Normalise to plain JSON types so diffs compare and store cleanly."""
    return json.loads(json.dumps(value, default=str, sort_keys=True))


def snapshot(entity) -> dict:
    """Column values of an ORM entity as a JSON-safe dict."""
    return {
        column.key: _jsonable(getattr(entity, column.key))
        for column in entity.__table__.columns
    }


def get_diff(
    old: dict | None,
    new: dict | None,
    fields: list[str] | None = None,
) -> dict | None:
    """Field-level diff between two snapshots.

    ``old is None`` means a creation (no diff); ``new is None`` a deletion.
    Returns None when nothing tracked changed.
    """
    if old is None:
        return None
    if new is None:
        return {"_deleted": {"before": False, "after": True}}

    keys = fields if fields is not None else sorted(set(old) | set(new))
    diff = {}
    for key in keys:
        if key in IGNORED_FIELDS:
            continue
        before, after = _jsonable(old.get(key)), _jsonable(new.get(key))
        if json.dumps(before, sort_keys=True) != json.dumps(after, sort_keys=True):
            diff[key] = {"before": before, "after": after}
    return diff or None


@dataclass(slots=True)
class ChangelogFilters:
    entity_type: ChangeEntityType | None = None
    entity_id: UUID | None = None
    action: ChangeAction | None = None
    changed_by: UUID | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None


@dataclass(slots=True)
class ChangeStats:
    total_changes: int
    by_entity_type: dict[str, int]
    by_action: dict[str, int]


def serialize_entry(entry: ChangeLog) -> dict:
    return {
        "id": str(entry.id),
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "changed_by": str(entry.changed_by) if entry.changed_by else None,
        "changed_at": entry.changed_at.isoformat() if entry.changed_at else None,
        "diff": entry.diff,
    }


class ChangelogService:
    """Writes and queries ChangeLog entries."""

    __slots__ = ()

    def log_change(
        self,
        session: AsyncSession,
        *,
        entity_type: ChangeEntityType,
        entity_id: UUID,
        action: ChangeAction,
        changed_by: UUID | None,
        before: dict | None = None,
        after: dict | None = None,
        fields: list[str] | None = None,
        diff: dict | None = None,
    ) -> ChangeLog | None:
        """Stage an entry in the caller's unit of work.

        Never raises: audit failures are logged and the mutation proceeds.
        Updates whose diff is empty are not recorded.
        """
        try:
            if diff is None and action in (ChangeAction.UPDATE, ChangeAction.DELETE):
                diff = get_diff(before, after, fields)
            if action == ChangeAction.UPDATE and not diff:
                log.debug("changelog_skipped_empty_diff", entity_type=entity_type.value,
                          entity_id=str(entity_id))
                return None

            entry = ChangeLog(
                id=uuid4(),
                entity_type=entity_type.value,
                entity_id=entity_id,
                action=action.value,
                changed_by=changed_by,
                changed_at=utcnow(),
                diff=_jsonable(diff) if diff is not None else None,
            )
            session.add(entry)
            return entry
        except Exception as e:
            log.error(
                "changelog_write_failed",
                entity_type=entity_type.value,
                entity_id=str(entity_id),
                action=action.value,
                error=str(e),
            )
            return None

    def _scope(self, requester, filters: ChangelogFilters) -> Result[ChangelogFilters, AppError]:
        if requester.role == Role.STUDENT:
            return insufficient_permissions(
                "view the changelog",
                user_id=str(requester.id),
                origin="engine.changelog",
            )
        if requester.role == Role.TEACHER:
            return Ok(replace(filters, changed_by=requester.id))
        return Ok(filters)

    @staticmethod
    def _apply_filters(query, filters: ChangelogFilters):
        if filters.entity_type is not None:
            query = query.where(ChangeLog.entity_type == filters.entity_type.value)
        if filters.entity_id is not None:
            query = query.where(ChangeLog.entity_id == filters.entity_id)
        if filters.action is not None:
            query = query.where(ChangeLog.action == filters.action.value)
        if filters.changed_by is not None:
            query = query.where(ChangeLog.changed_by == filters.changed_by)
        if filters.from_date is not None:
            query = query.where(ChangeLog.changed_at >= filters.from_date)
        if filters.to_date is not None:
            query = query.where(ChangeLog.changed_at <= filters.to_date)
        return query

    @map_db_errors("engine.changelog")
    async def get_changelog(
        self,
        session: AsyncSession,
        requester,
        filters: ChangelogFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Result[tuple[list[ChangeLog], int], AppError]:
        """Filtered, newest-first page of entries plus the total count."""
        scoped = self._scope(requester, filters or ChangelogFilters())
        if scoped.is_err():
            return scoped
        filters = scoped.unwrap()
        params = clamp_page(page, limit)

        total = await session.scalar(
            self._apply_filters(select(func.count(ChangeLog.id)), filters)
        )
        result = await session.execute(
            self._apply_filters(select(ChangeLog), filters)
            .order_by(ChangeLog.changed_at.desc(), ChangeLog.id)
            .offset(params.offset)
            .limit(params.limit)
        )
        return Ok((list(result.scalars().all()), total or 0))

    async def get_recent_changes(
        self,
        session: AsyncSession,
        requester,
        limit: int = 20,
    ) -> Result[list[ChangeLog], AppError]:
        result = await self.get_changelog(session, requester, page=1, limit=min(limit, MAX_LIMIT))
        return result.map(lambda page: page[0])

    @map_db_errors("engine.changelog")
    async def get_entity_history(
        self,
        session: AsyncSession,
        requester,
        entity_type: ChangeEntityType,
        entity_id: UUID,
    ) -> Result[list[ChangeLog], AppError]:
        """Every visible entry for one entity, newest first."""
        scoped = self._scope(requester, ChangelogFilters(entity_type=entity_type, entity_id=entity_id))
        if scoped.is_err():
            return scoped
        result = await session.execute(
            self._apply_filters(select(ChangeLog), scoped.unwrap())
            .order_by(ChangeLog.changed_at.desc())
        )
        return Ok(list(result.scalars().all()))

    @map_db_errors("engine.changelog")
    async def get_change_stats(
        self,
        session: AsyncSession,
        requester,
        from_date: datetime,
        to_date: datetime,
    ) -> Result[ChangeStats, AppError]:
        if from_date > to_date:
            return validation_error(
                "fromDate must be before toDate",
                field="fromDate",
                origin="engine.changelog",
            )
        scoped = self._scope(requester, ChangelogFilters(from_date=from_date, to_date=to_date))
        if scoped.is_err():
            return scoped
        filters = scoped.unwrap()

        by_type_rows = await session.execute(
            self._apply_filters(
                select(ChangeLog.entity_type, func.count(ChangeLog.id)), filters
            ).group_by(ChangeLog.entity_type)
        )
        by_action_rows = await session.execute(
            self._apply_filters(
                select(ChangeLog.action, func.count(ChangeLog.id)), filters
            ).group_by(ChangeLog.action)
        )
        by_entity_type = {row[0]: row[1] for row in by_type_rows.all()}
        by_action = {row[0]: row[1] for row in by_action_rows.all()}
        return Ok(ChangeStats(
            total_changes=sum(by_entity_type.values()),
            by_entity_type=by_entity_type,
            by_action=by_action,
        ))
