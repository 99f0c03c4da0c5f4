import logging
from typing import Any, Iterable, Sequence

from app.cache.keys import (
    SEARCH_TAG,
    STATS_TAG,
    list_key,
    read_tags,
    search_key,
    stats_key,
    task_key,
    user_tag,
)
from app.cache.layer import CacheLayer
from app.core.config import Settings, get_settings
from app.core.events import EventSink, log_event
from app.core.exceptions import NotFoundError, ValidationError
from app.database import Database
from app.models import Task, TaskCreate, TaskUpdate, get_utc_now
from app.query.executor import QueryExecutor
from app.query.predicates import PredicateBuilder
from app.schemas import (
    BulkMutationResult,
    FilterSpec,
    PageResult,
    Pagination,
    SortSpec,
    StatsSummary,
    TaskOrder,
    coerce,
)
from app.services.mutations import MutationEngine
from app.services.stats import StatsAggregator

logger = logging.getLogger(__name__)


class TaskService:
    """
    Upward interface of the task layer.

    Reads go through the cache; writes go through the MutationEngine, which
    invalidates before returning. Accepts pydantic models or plain dicts.
    """

    def __init__(
        self,
        database: Database,
        cache: CacheLayer,
        settings: Settings | None = None,
        *,
        events: EventSink = log_event,
        clock=get_utc_now,
    ):
        self.settings = settings or get_settings()
        self.cache = cache
        self.queries = QueryExecutor(
            database, PredicateBuilder(clock), max_limit=self.settings.max_page_limit
        )
        self.mutations = MutationEngine(database, cache, events=events, clock=clock)
        self.stats = StatsAggregator(database, clock=clock)

    @classmethod
    async def from_settings(cls, settings: Settings, database: Database | None = None) -> "TaskService":
        database = database or Database.from_settings(settings)
        cache = await CacheLayer.from_settings(settings)
        return cls(database, cache, settings)

    # -- reads --------------------------------------------------------------

    async def find_by_id(self, task_id: str, owner_id: str) -> Task | None:
        return await self.cache.cache_query(
            task_key(task_id, owner_id),
            lambda: self.queries.find_by_id(task_id, owner_id),
            tags=read_tags(owner_id, task_id),
            ttl=self.settings.task_ttl_seconds,
            model=Task,
        )

    async def list_tasks(
        self,
        owner_id: str,
        filters: FilterSpec | dict | None = None,
        sort: SortSpec | dict | None = None,
        pagination: Pagination | dict | None = None,
    ) -> PageResult[Task]:
        filters = coerce(FilterSpec, filters)
        sort = coerce(SortSpec, sort)
        pagination = coerce(Pagination, pagination)

        return await self.cache.cache_query(
            list_key(owner_id, filters, sort, pagination),
            lambda: self.queries.page(
                owner_id,
                filters,
                sort,
                pagination,
                default_limit=self.settings.list_default_limit,
            ),
            tags=read_tags(owner_id),
            ttl=self.settings.list_ttl_seconds,
            model=PageResult[Task],
        )

    async def search(
        self,
        owner_id: str,
        term: str,
        filters: FilterSpec | dict | None = None,
        sort: SortSpec | dict | None = None,
        pagination: Pagination | dict | None = None,
    ) -> PageResult[Task]:
        """Case-insensitive partial match over title, description and tags."""
        term = (term or "").strip()
        if not term:
            raise ValidationError("Search term must not be empty")
        filters = coerce(FilterSpec, filters).model_copy(update={"search": term})
        sort = coerce(SortSpec, sort)
        pagination = coerce(Pagination, pagination)

        return await self.cache.cache_query(
            search_key(owner_id, term, filters, sort, pagination),
            lambda: self.queries.page(
                owner_id,
                filters,
                sort,
                pagination,
                default_limit=self.settings.search_default_limit,
            ),
            tags=[*read_tags(owner_id), SEARCH_TAG],
            ttl=self.settings.search_ttl_seconds,
            model=PageResult[Task],
        )

    async def get_stats(self, owner_id: str) -> StatsSummary:
        return await self.cache.cache_query(
            stats_key(owner_id),
            lambda: self.stats.summarize(owner_id),
            tags=[user_tag(owner_id), STATS_TAG],
            ttl=self.settings.stats_ttl_seconds,
            model=StatsSummary,
        )

    # -- writes -------------------------------------------------------------

    async def create_task(self, owner_id: str, data: TaskCreate | dict[str, Any]) -> Task:
        return await self.mutations.create(owner_id, data)

    async def update(self, task_id: str, owner_id: str, data: TaskUpdate | dict[str, Any]) -> Task | None:
        try:
            return await self.mutations.update(task_id, owner_id, data)
        except NotFoundError:
            logger.info("Update of task %s by %s matched nothing", task_id, owner_id)
            return None

    async def complete(self, task_id: str, owner_id: str) -> Task | None:
        return await self.update(task_id, owner_id, {"status": "completed"})

    async def delete(self, task_id: str, owner_id: str) -> bool:
        try:
            return await self.mutations.delete(task_id, owner_id)
        except NotFoundError:
            logger.info("Delete of task %s by %s matched nothing", task_id, owner_id)
            return False

    async def restore(self, task_id: str, owner_id: str) -> Task | None:
        try:
            return await self.mutations.restore(task_id, owner_id)
        except NotFoundError:
            return None

    async def hard_delete(self, task_id: str, owner_id: str, *, authorized: bool = False) -> bool:
        try:
            return await self.mutations.hard_delete(task_id, owner_id, authorized=authorized)
        except NotFoundError:
            return False

    async def duplicate(self, task_id: str, owner_id: str, title: str | None = None) -> Task | None:
        try:
            return await self.mutations.duplicate(task_id, owner_id, title)
        except NotFoundError:
            return None

    async def bulk_update(
        self, owner_id: str, task_ids: Iterable[str], data: TaskUpdate | dict[str, Any]
    ) -> BulkMutationResult:
        return await self.mutations.bulk_update(owner_id, task_ids, data)

    async def bulk_delete(self, owner_id: str, task_ids: Iterable[str]) -> BulkMutationResult:
        return await self.mutations.bulk_delete(owner_id, task_ids)

    async def reorder(self, owner_id: str, orders: Sequence[TaskOrder | tuple[str, int] | dict[str, Any]]) -> None:
        await self.mutations.reorder(owner_id, orders)

    async def close(self):
        await self.cache.close()
