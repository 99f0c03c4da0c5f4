"""
Compile a FilterSpec into a typed predicate list with positional parameters.

The builder never produces query text. It emits an ordered tuple of clauses
(`Condition` / `AnyOf`) whose `params` are indices into one shared, ordered
parameter tuple. `app.query.render` is the only place these become SQL, and
the count and data statements both render the same `CompiledFilter`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from app.core.exceptions import ValidationError
from app.models import CLOSED_STATUSES, TaskStatus, as_utc, get_utc_now, normalize_tags, tag_token
from app.schemas import FilterSpec

LIKE_ESCAPE = "\\"


class Op(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    NOT_NULL = "not_null"
    LIKE = "like"
    ILIKE = "ilike"


@dataclass(frozen=True)
class Condition:
    field: str
    op: Op
    params: tuple[int, ...] = ()


@dataclass(frozen=True)
class AnyOf:
    clauses: tuple["Clause", ...]


Clause = Union[Condition, AnyOf]


@dataclass(frozen=True)
class CompiledFilter:
    clauses: tuple[Clause, ...]
    params: tuple[Any, ...]


def escape_like(value: str) -> str:
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


@dataclass
class _Compilation:
    clauses: list[Clause] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)

    def bind(self, value: Any) -> int:
        self.params.append(value)
        return len(self.params) - 1

    def cond(self, name: str, op: Op, *values: Any) -> Condition:
        return Condition(name, op, tuple(self.bind(v) for v in values))

    def add(self, clause: Clause) -> None:
        self.clauses.append(clause)

    def freeze(self) -> CompiledFilter:
        return CompiledFilter(tuple(self.clauses), tuple(self.params))


class PredicateBuilder:
    """Turns a FilterSpec plus owner id into a CompiledFilter."""

    def __init__(self, clock=get_utc_now):
        self._clock = clock

    def build(
        self, filters: FilterSpec | None, owner_id: str, now: datetime | None = None
    ) -> CompiledFilter:
        if not owner_id:
            raise ValidationError("owner id is required")
        filters = filters or FilterSpec()
        now = as_utc(now) if now is not None else self._clock()
        c = _Compilation()

        c.add(c.cond("owner_id", Op.EQ, owner_id))

        if not filters.include_deleted:
            c.add(Condition("deleted_at", Op.IS_NULL))

        statuses = _unique(s.value for s in filters.statuses)
        if statuses:
            # An explicit status filter is authoritative, archived included.
            c.add(c.cond("status", Op.IN, *statuses))
        elif not filters.include_archived:
            c.add(c.cond("status", Op.NE, TaskStatus.ARCHIVED.value))

        term = (filters.search or "").strip()
        if term:
            pattern = c.bind(f"%{escape_like(term)}%")
            c.add(
                AnyOf(
                    (
                        Condition("title", Op.ILIKE, (pattern,)),
                        Condition("description", Op.ILIKE, (pattern,)),
                        Condition("tags_search", Op.ILIKE, (pattern,)),
                    )
                )
            )

        priorities = _unique(p.value for p in filters.priorities)
        if priorities:
            c.add(c.cond("priority", Op.IN, *priorities))

        category_ids = _unique(filters.category_ids)
        if category_ids:
            c.add(c.cond("category_id", Op.IN, *category_ids))

        tags = normalize_tags(filters.tags)
        if tags:
            c.add(
                AnyOf(
                    tuple(
                        c.cond("tags_search", Op.LIKE, f"%{escape_like(tag_token(tag))}%")
                        for tag in tags
                    )
                )
            )

        self._add_range(c, "due_date", filters.due_from, filters.due_to)
        self._add_range(c, "created_at", filters.created_from, filters.created_to)
        self._add_range(c, "completed_at", filters.completed_from, filters.completed_to)

        if filters.has_due_date is not None:
            c.add(Condition("due_date", Op.NOT_NULL if filters.has_due_date else Op.IS_NULL))
        if filters.has_category is not None:
            c.add(
                Condition("category_id", Op.NOT_NULL if filters.has_category else Op.IS_NULL)
            )

        if filters.is_overdue is True:
            c.add(c.cond("due_date", Op.LT, now))
            c.add(c.cond("status", Op.NOT_IN, *CLOSED_STATUSES))
        elif filters.is_overdue is False:
            c.add(
                AnyOf(
                    (
                        Condition("due_date", Op.IS_NULL),
                        c.cond("due_date", Op.GE, now),
                        c.cond("status", Op.IN, *CLOSED_STATUSES),
                    )
                )
            )

        return c.freeze()

    @staticmethod
    def _add_range(
        c: _Compilation, name: str, start: datetime | None, end: datetime | None
    ) -> None:
        start, end = as_utc(start), as_utc(end)
        if start is not None and end is not None and start > end:
            raise ValidationError(f"{name} range starts after it ends")
        if start is not None:
            c.add(c.cond(name, Op.GE, start))
        if end is not None:
            c.add(c.cond(name, Op.LE, end))


def _unique(values) -> list:
    seen: list = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
