"""
The one place a CompiledFilter becomes SQL.

Field names are resolved through a fixed column map and every parameter is
attached as a bind parameter named after its position, so no value ever
reaches the statement text.
"""

from typing import Any

from sqlalchemy import and_, bindparam, or_
from sqlalchemy.sql.elements import ColumnElement

from app.models import TaskRecord
from app.query.predicates import LIKE_ESCAPE, AnyOf, Clause, CompiledFilter, Condition, Op

COLUMNS = {
    "id": TaskRecord.id,
    "owner_id": TaskRecord.owner_id,
    "title": TaskRecord.title,
    "description": TaskRecord.description,
    "category_id": TaskRecord.category_id,
    "priority": TaskRecord.priority,
    "status": TaskRecord.status,
    "due_date": TaskRecord.due_date,
    "completed_at": TaskRecord.completed_at,
    "created_at": TaskRecord.created_at,
    "updated_at": TaskRecord.updated_at,
    "deleted_at": TaskRecord.deleted_at,
    "tags_search": TaskRecord.tags_search,
    "sort_order": TaskRecord.sort_order,
}


def render_filter(compiled: CompiledFilter) -> list[ColumnElement]:
    return [_render(clause, compiled.params) for clause in compiled.clauses]


def _render(clause: Clause, params: tuple[Any, ...]) -> ColumnElement:
    if isinstance(clause, AnyOf):
        return or_(*(_render(inner, params) for inner in clause.clauses))
    if isinstance(clause, Condition):
        return _render_condition(clause, params)
    raise TypeError(f"Unsupported clause {clause!r}")


def _render_condition(cond: Condition, params: tuple[Any, ...]) -> ColumnElement:
    try:
        column = COLUMNS[cond.field]
    except KeyError:
        raise ValueError(f"Unknown filter field {cond.field!r}") from None

    binds = [
        bindparam(f"p{index}", params[index], type_=column.type) for index in cond.params
    ]

    op = cond.op
    if op is Op.IS_NULL:
        return column.is_(None)
    if op is Op.NOT_NULL:
        return column.is_not(None)
    if op is Op.IN:
        return column.in_(binds)
    if op is Op.NOT_IN:
        return column.not_in(binds)

    (value,) = binds
    if op is Op.EQ:
        return column == value
    if op is Op.NE:
        return column != value
    if op is Op.LT:
        return column < value
    if op is Op.LE:
        return column <= value
    if op is Op.GT:
        return column > value
    if op is Op.GE:
        return column >= value
    if op is Op.LIKE:
        return column.like(value, escape=LIKE_ESCAPE)
    if op is Op.ILIKE:
        return column.ilike(value, escape=LIKE_ESCAPE)
    raise ValueError(f"Unsupported operator {op!r}")


def where_all(compiled: CompiledFilter) -> ColumnElement:
    return and_(*render_filter(compiled))
