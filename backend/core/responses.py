"""Success envelope and pagination helpers shared by every router."""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Query
from fastapi.encoders import jsonable_encoder

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def envelope(data: Any = None, message: str = "OK") -> dict:
    return {
        "success": True,
        "data": jsonable_encoder(data),
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass(slots=True)
class PageParams:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def clamp_page(page: int | None, limit: int | None) -> PageParams:
    """Normalise page/limit: page >= 1, 1 <= limit <= MAX_LIMIT."""
    page = max(1, page or DEFAULT_PAGE)
    limit = min(max(1, limit or DEFAULT_LIMIT), MAX_LIMIT)
    return PageParams(page=page, limit=limit)


def page_params(
    page: int = Query(DEFAULT_PAGE, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1),
) -> PageParams:
    """Query dependency; oversized limits are capped rather than rejected."""
    return clamp_page(page, limit)


def pagination_block(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def paginated(
    items: list, page: int, limit: int, total: int, message: str = "OK"
) -> dict:
    body = envelope(items, message)
    body["pagination"] = pagination_block(page, limit, total)
    return body
