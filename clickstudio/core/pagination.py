"""
Page/limit pagination for list endpoints.

``page_params(default_limit)`` builds the query-string dependency; the
limit is capped by ``API_MAX_PAGE_SIZE`` (read per request). Services run
``paginate(query, page)`` and routers echo totals through
``X-Total-Count``/``X-Page``/``X-Page-Size`` as well as the body.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Query, Response
from sqlalchemy.orm import Query as OrmQuery

DEFAULT_MAX_PAGE_SIZE = 200


def max_page_size() -> int:
    try:
        value = int(os.getenv("API_MAX_PAGE_SIZE", DEFAULT_MAX_PAGE_SIZE))
    except ValueError:
        return DEFAULT_MAX_PAGE_SIZE
    return value if value >= 1 else DEFAULT_MAX_PAGE_SIZE


@dataclass(frozen=True)
class Page:
    number: int = 1
    limit: int = 50

    @classmethod
    def of(cls, number: int, limit: int) -> "Page":
        return cls(number=max(number, 1), limit=min(max(limit, 1), max_page_size()))

    @property
    def offset(self) -> int:
        return (self.number - 1) * self.limit

    def meta(self, total: int) -> dict[str, int]:
        return {
            "total": total,
            "page": self.number,
            "limit": self.limit,
            "totalPages": math.ceil(total / self.limit),
        }


def page_params(default_limit: int):
    def _dep(
        page: int = Query(1, ge=1),
        limit: int = Query(default_limit, ge=1),
    ) -> Page:
        return Page.of(page, limit)

    return _dep


def paginate(query: OrmQuery, page: Page) -> tuple[list[Any], int]:
    """Count the filtered query, then fetch one page of it. Ordering is the caller's."""
    total = query.order_by(None).count()
    return query.offset(page.offset).limit(page.limit).all(), total


def set_pagination_headers(response: Optional[Response], *, total: int, page: Page) -> None:
    if response is None:
        return
    response.headers["X-Total-Count"] = str(total)
    response.headers["X-Page"] = str(page.number)
    response.headers["X-Page-Size"] = str(page.limit)
