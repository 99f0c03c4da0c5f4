import asyncio
import logging

from sqlalchemy import case, func
from sqlmodel import select

from app.database import Database
from app.models import PRIORITY_ORDINALS, Task, TaskRecord, task_from_record
from app.query.predicates import PredicateBuilder
from app.query.render import render_filter
from app.schemas import FilterSpec, PageResult, Pagination, SortSpec

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "created_at": TaskRecord.created_at,
    "updated_at": TaskRecord.updated_at,
    "due_date": TaskRecord.due_date,
    "priority": TaskRecord.priority,
    "status": TaskRecord.status,
    "title": TaskRecord.title,
    "sort_order": TaskRecord.sort_order,
}
DEFAULT_SORT_FIELD = "created_at"
HARD_MAX_LIMIT = 100


def resolve_sort(sort: SortSpec | None) -> list:
    """Allow-listed ORDER BY terms with a deterministic tie-break."""
    sort = sort or SortSpec()
    name = sort.field if sort.field in SORT_FIELDS else DEFAULT_SORT_FIELD
    descending = (sort.direction or "").lower() != "asc"

    if name == "priority":
        key = case(PRIORITY_ORDINALS, value=TaskRecord.priority, else_=len(PRIORITY_ORDINALS) + 1)
    else:
        key = SORT_FIELDS[name]

    primary = key.desc() if descending else key.asc()
    if name == "due_date":
        primary = primary.nulls_last()

    order = [primary]
    if name != "created_at":
        order.append(TaskRecord.created_at.desc() if descending else TaskRecord.created_at.asc())
    order.append(TaskRecord.id.asc())
    return order


def resolve_limit(limit: int | None, default: int, maximum: int = HARD_MAX_LIMIT) -> int:
    maximum = min(maximum, HARD_MAX_LIMIT)
    if limit is None or limit < 1:
        return min(default, maximum)
    return min(limit, maximum)


class QueryExecutor:
    """
    Paired count + data reads over one compiled filter.

    Both statements are built from the same rendered predicate list, and
    both are in flight before either is awaited.
    """

    def __init__(self, database: Database, builder: PredicateBuilder | None = None, *, max_limit: int = HARD_MAX_LIMIT):
        self._db = database
        self._builder = builder or PredicateBuilder()
        self._max_limit = max_limit

    async def page(
        self,
        owner_id: str,
        filters: FilterSpec | None = None,
        sort: SortSpec | None = None,
        pagination: Pagination | None = None,
        *,
        default_limit: int = 20,
    ) -> PageResult[Task]:
        pagination = pagination or Pagination()
        limit = resolve_limit(pagination.limit, default_limit, self._max_limit)
        page = max(pagination.page, 1)
        offset = (page - 1) * limit

        where = render_filter(self._builder.build(filters, owner_id))
        count_stmt = select(func.count()).select_from(TaskRecord).where(*where)
        data_stmt = (
            select(TaskRecord).where(*where).order_by(*resolve_sort(sort)).offset(offset).limit(limit)
        )

        total, records = await asyncio.gather(
            self._scalar(count_stmt, "count"),
            self._records(data_stmt, "list"),
        )
        logger.debug("Page read owner=%s total=%s offset=%s limit=%s", owner_id, total, offset, limit)
        return PageResult[Task].build(
            [task_from_record(r) for r in records], total, limit, offset
        )

    async def count(self, owner_id: str, filters: FilterSpec | None = None) -> int:
        where = render_filter(self._builder.build(filters, owner_id))
        return await self._scalar(
            select(func.count()).select_from(TaskRecord).where(*where), "count"
        )

    async def fetch_all(
        self, owner_id: str, filters: FilterSpec | None = None, sort: SortSpec | None = None
    ) -> list[Task]:
        """Unpaginated read of everything the filter matches."""
        where = render_filter(self._builder.build(filters, owner_id))
        records = await self._records(
            select(TaskRecord).where(*where).order_by(*resolve_sort(sort)), "list"
        )
        return [task_from_record(r) for r in records]

    async def find_by_id(self, task_id: str, owner_id: str, *, include_deleted: bool = False) -> Task | None:
        stmt = select(TaskRecord).where(
            TaskRecord.id == task_id, TaskRecord.owner_id == owner_id
        )
        if not include_deleted:
            stmt = stmt.where(TaskRecord.deleted_at.is_(None))
        records = await self._records(stmt, "find_by_id", [task_id])
        return task_from_record(records[0]) if records else None

    async def _scalar(self, stmt, operation: str) -> int:
        async with self._db.session(operation) as session:
            result = await session.exec(stmt)
            return int(result.one())

    async def _records(self, stmt, operation: str, ids=()) -> list[TaskRecord]:
        async with self._db.session(operation, ids) as session:
            result = await session.exec(stmt)
            return list(result.all())
