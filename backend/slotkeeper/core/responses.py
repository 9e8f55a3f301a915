"""List envelopes for API responses.

List endpoints return ``{"items", "total", "skip", "limit", "has_more"}``
where ``total`` counts every matching row, not only the returned page.
"""

from typing import Type

from pydantic import BaseModel
from sqlalchemy.orm import Query


def paginated_response(items: list, total: int, skip: int, limit: int) -> dict:
    return {
        "items": items,
        "total": total,
        "skip": skip,
        "limit": limit,
        "has_more": (skip + len(items)) < total,
    }


def page_of(query: Query, schema: Type[BaseModel], skip: int = 0, limit: int = 100) -> dict:
    """Count ``query``, fetch one page and serialize rows through ``schema``.

    The query must already carry its ORDER BY so pages are stable.
    """
    total = query.order_by(None).count()
    rows = query.offset(skip).limit(limit).all()
    items = [schema.model_validate(row).model_dump(mode="json") for row in rows]
    return paginated_response(items, total, skip, limit)
