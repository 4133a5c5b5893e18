# storefront/queries.py
"""Composition of filtered, paginated SELECTs.

SQL text is only ever assembled from fixed fragments written in this package;
every caller-supplied value travels as a bound parameter.
"""

import math
from dataclasses import dataclass

from .errors import ValidationError

MAX_PAGE_SIZE = 100


class Where:
    """Conjunction of conditions, each with its own bound parameters."""

    def __init__(self, *clauses):
        self.clauses = list(clauses)
        self.params = []

    def add(self, clause, *params):
        self.clauses.append(clause)
        self.params.extend(params)
        return self

    def add_if(self, value, clause, *params):
        # skips the condition when the filter value was not supplied
        if value is None or value == "":
            return self
        return self.add(clause, *(params or (value,)))

    @property
    def sql(self) -> str:
        if not self.clauses:
            return ""
        return "WHERE " + " AND ".join(self.clauses)


@dataclass(frozen=True)
class Page:
    page: int = 1
    limit: int = 10

    def __post_init__(self):
        if self.page < 1:
            raise ValidationError("Page must be 1 or greater")
        if not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self, total: int) -> dict:
        total_pages = math.ceil(total / self.limit)
        return {
            "page": self.page,
            "limit": self.limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": self.page < total_pages,
            "hasPrev": self.page > 1,
        }


def paginate(store, select: str, count: str, where: Where, order_by: str, page: Page):
    """Run the page query and its count query, returning ``(rows, meta)``."""
    total_row = store.query_one(f"{count} {where.sql}", tuple(where.params))
    total = int(total_row["total"]) if total_row else 0
    rows = store.query_many(
        f"{select} {where.sql} ORDER BY {order_by} LIMIT %s OFFSET %s",
        (*where.params, page.limit, page.offset),
    )
    return rows, page.meta(total)
