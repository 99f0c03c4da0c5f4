import logging
from enum import Enum
from typing import Any, Iterable, Sequence

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.keys import mutation_tags
from app.cache.layer import CacheLayer
from app.core.events import EventSink, log_event
from app.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.database import Database
from app.models import (
    CategoryRecord,
    Task,
    TaskCreate,
    TaskRecord,
    TaskStatus,
    TaskUpdate,
    encode_metadata,
    encode_tags,
    get_utc_now,
    index_tags,
    task_from_record,
)
from app.schemas import BulkMutationResult, TaskOrder, coerce

logger = logging.getLogger(__name__)

COMPLETED = TaskStatus.COMPLETED.value
NOT_FOUND_REASON = "Task not found or access denied"


class MutationEngine:
    """
    Every write path for tasks.

    Each public method commits its own transaction and then invalidates, before
    returning, the exact tag set its write can make stale (see
    `app.cache.keys.mutation_tags`).
    """

    def __init__(self, database: Database, cache: CacheLayer, *, events: EventSink = log_event, clock=get_utc_now):
        self._db = database
        self._cache = cache
        self._events = events
        self._clock = clock

    # -- single item ------------------------------------------------------

    async def create(self, owner_id: str, data: TaskCreate | dict[str, Any]) -> Task:
        _require_owner(owner_id)
        payload = coerce(TaskCreate, data)
        now = self._clock()

        async with self._db.transaction("create") as session:
            if payload.category_id:
                await self._check_category(session, owner_id, payload.category_id)

            sort_order = payload.sort_order
            if sort_order is None:
                sort_order = await self._next_sort_order(session, owner_id)

            record = TaskRecord(
                owner_id=owner_id,
                title=payload.title,
                description=payload.description,
                category_id=payload.category_id,
                priority=payload.priority.value,
                status=payload.status.value,
                due_date=payload.due_date,
                reminder_date=payload.reminder_date,
                start_date=payload.start_date,
                estimated_minutes=payload.estimated_minutes,
                tags_json=encode_tags(payload.tags),
                tags_search=index_tags(payload.tags),
                sort_order=sort_order,
                metadata_json=encode_metadata(payload.metadata),
                created_at=now,
                updated_at=now,
            )
            if record.status == COMPLETED:
                record.completed_at = now
                record.completed_by = owner_id
            session.add(record)

        task = task_from_record(record)
        # No entity tag: nothing could have cached this id before it existed.
        await self._invalidate(owner_id)
        self._emit("task.created", owner_id=owner_id, task_ids=[task.id])
        return task

    async def update(self, task_id: str, owner_id: str, data: TaskUpdate | dict[str, Any]) -> Task:
        """Partial update. Missing or foreign tasks raise NotFoundError."""
        _require_owner(owner_id)
        changes = coerce(TaskUpdate, data).changes()
        now = self._clock()

        async with self._db.transaction("update", [task_id]) as session:
            record = await self._owned(session, task_id, owner_id)
            if record is None:
                raise NotFoundError(f"Task {task_id} not found")
            if not changes:
                return task_from_record(record)
            if changes.get("category_id"):
                await self._check_category(session, owner_id, changes["category_id"])
            self._apply(record, changes, owner_id, now)
            session.add(record)

        task = task_from_record(record)
        await self._invalidate(owner_id, [task_id])
        self._emit("task.updated", owner_id=owner_id, task_ids=[task_id], fields=sorted(changes))
        return task

    async def delete(self, task_id: str, owner_id: str) -> bool:
        """Soft delete: the row stays, marked with `deleted_at`."""
        _require_owner(owner_id)
        now = self._clock()

        async with self._db.transaction("delete", [task_id]) as session:
            record = await self._owned(session, task_id, owner_id)
            if record is None:
                raise NotFoundError(f"Task {task_id} not found")
            record.deleted_at = now
            record.updated_at = now
            session.add(record)

        await self._invalidate(owner_id, [task_id])
        self._emit("task.deleted", owner_id=owner_id, task_ids=[task_id])
        return True

    async def restore(self, task_id: str, owner_id: str) -> Task:
        _require_owner(owner_id)
        now = self._clock()

        async with self._db.transaction("restore", [task_id]) as session:
            record = await self._owned(session, task_id, owner_id, deleted=True)
            if record is None:
                raise NotFoundError(f"Deleted task {task_id} not found")
            record.deleted_at = None
            record.updated_at = now
            session.add(record)

        task = task_from_record(record)
        await self._invalidate(owner_id, [task_id])
        self._emit("task.restored", owner_id=owner_id, task_ids=[task_id])
        return task

    async def hard_delete(self, task_id: str, owner_id: str, *, authorized: bool = False) -> bool:
        """
        Physically remove a task row, soft-deleted or not.

        Administrative only: callers must pass an explicit grant. Never reached
        from the regular delete path.
        """
        if not authorized:
            raise AuthorizationError("Hard delete requires an administrative grant")
        _require_owner(owner_id)

        async with self._db.transaction("hard_delete", [task_id]) as session:
            result = await session.exec(
                select(TaskRecord).where(TaskRecord.id == task_id, TaskRecord.owner_id == owner_id)
            )
            record = result.first()
            if record is None:
                raise NotFoundError(f"Task {task_id} not found")
            await session.delete(record)

        await self._invalidate(owner_id, [task_id])
        self._emit("task.hard_deleted", owner_id=owner_id, task_ids=[task_id])
        return True

    async def duplicate(self, task_id: str, owner_id: str, title: str | None = None) -> Task:
        """Copy an owned task into a fresh pending task."""
        _require_owner(owner_id)
        async with self._db.session("duplicate", [task_id]) as session:
            record = await self._owned(session, task_id, owner_id, lock=False)
        if record is None:
            raise NotFoundError(f"Task {task_id} not found")

        source = task_from_record(record)
        copy = TaskCreate(
            title=(title or f"Copy of {source.title}")[:255],
            description=source.description,
            category_id=source.category_id,
            priority=source.priority,
            due_date=source.due_date,
            reminder_date=source.reminder_date,
            start_date=source.start_date,
            estimated_minutes=source.estimated_minutes,
            tags=source.tags,
            metadata=source.metadata,
        )
        return await self.create(owner_id, copy)

    # -- bulk ---------------------------------------------------------------

    async def bulk_update(
        self, owner_id: str, task_ids: Iterable[str], data: TaskUpdate | dict[str, Any]
    ) -> BulkMutationResult:
        _require_owner(owner_id)
        changes = coerce(TaskUpdate, data).changes()
        ids = _dedupe(task_ids)
        result = BulkMutationResult()
        if not ids:
            return result
        if not changes:
            raise ValidationError("Bulk update needs at least one field")
        if changes.get("category_id"):
            async with self._db.session("bulk_update") as session:
                await self._check_category(session, owner_id, changes["category_id"])

        owned = await self._partition(owner_id, ids, result)
        if owned:
            now = self._clock()
            async with self._db.transaction("bulk_update", owned) as session:
                records = await self._owned_many(session, owned, owner_id)
                for task_id in owned:
                    record = records.get(task_id)
                    if record is None:
                        result.fail(task_id, NOT_FOUND_REASON)
                        continue
                    self._apply(record, changes, owner_id, now)
                    session.add(record)
                    result.succeeded.append(task_id)

            await self._invalidate(owner_id, result.succeeded)

        logger.info(
            "Bulk update completed owner=%s requested=%s updated=%s failed=%s",
            owner_id, len(ids), result.succeeded_count, result.failed_count,
        )
        self._emit(
            "task.bulk_updated",
            owner_id=owner_id,
            task_ids=result.succeeded,
            failed_ids=result.failed,
            fields=sorted(changes),
        )
        return result

    async def bulk_delete(self, owner_id: str, task_ids: Iterable[str]) -> BulkMutationResult:
        _require_owner(owner_id)
        ids = _dedupe(task_ids)
        result = BulkMutationResult()
        if not ids:
            return result

        owned = await self._partition(owner_id, ids, result)
        if owned:
            now = self._clock()
            async with self._db.transaction("bulk_delete", owned) as session:
                records = await self._owned_many(session, owned, owner_id)
                for task_id in owned:
                    record = records.get(task_id)
                    if record is None:
                        result.fail(task_id, NOT_FOUND_REASON)
                        continue
                    record.deleted_at = now
                    record.updated_at = now
                    session.add(record)
                    result.succeeded.append(task_id)

            await self._invalidate(owner_id, result.succeeded)

        logger.info(
            "Bulk delete completed owner=%s requested=%s deleted=%s failed=%s",
            owner_id, len(ids), result.succeeded_count, result.failed_count,
        )
        self._emit(
            "task.bulk_deleted",
            owner_id=owner_id,
            task_ids=result.succeeded,
            failed_ids=result.failed,
        )
        return result

    async def reorder(self, owner_id: str, orders: Sequence[TaskOrder | tuple[str, int] | dict[str, Any]]) -> None:
        """Apply (id, sort_order) pairs in one transaction; foreign rows are skipped."""
        _require_owner(owner_id)
        wanted: dict[str, int] = {}
        for item in orders:
            order = _coerce_order(item)
            wanted[order.id] = order.sort_order
        if not wanted:
            return

        now = self._clock()
        applied: list[str] = []
        async with self._db.transaction("reorder", list(wanted)) as session:
            records = await self._owned_many(session, list(wanted), owner_id)
            for task_id, sort_order in wanted.items():
                record = records.get(task_id)
                if record is None:
                    continue
                record.sort_order = sort_order
                record.updated_at = now
                session.add(record)
                applied.append(task_id)

        skipped = [task_id for task_id in wanted if task_id not in applied]
        if skipped:
            logger.info("Reorder skipped tasks not owned by %s: %s", owner_id, skipped)

        await self._invalidate(owner_id, applied)
        self._emit("task.reordered", owner_id=owner_id, task_ids=applied, skipped_ids=skipped)

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _apply(record: TaskRecord, changes: dict[str, Any], actor_id: str, now) -> None:
        previous_status = record.status
        for name, value in changes.items():
            if name == "tags":
                record.tags_json = encode_tags(value)
                record.tags_search = index_tags(value)
            elif name == "metadata":
                record.metadata_json = encode_metadata(value)
            else:
                setattr(record, name, value.value if isinstance(value, Enum) else value)

        # Completion bookkeeping moves only on a transition into or out of completed.
        if record.status == COMPLETED and previous_status != COMPLETED:
            record.completed_at = now
            record.completed_by = actor_id
        elif record.status != COMPLETED and previous_status == COMPLETED:
            record.completed_at = None
            record.completed_by = None
        record.updated_at = now

    @staticmethod
    async def _owned(
        session: AsyncSession, task_id: str, owner_id: str, *, deleted: bool = False, lock: bool = True
    ) -> TaskRecord | None:
        stmt = select(TaskRecord).where(TaskRecord.id == task_id, TaskRecord.owner_id == owner_id)
        if deleted:
            stmt = stmt.where(TaskRecord.deleted_at.is_not(None))
        else:
            stmt = stmt.where(TaskRecord.deleted_at.is_(None))
        if lock:
            stmt = stmt.with_for_update()
        result = await session.exec(stmt)
        return result.first()

    @staticmethod
    async def _owned_many(session: AsyncSession, task_ids: list[str], owner_id: str) -> dict[str, TaskRecord]:
        result = await session.exec(
            select(TaskRecord)
            .where(
                TaskRecord.id.in_(task_ids),
                TaskRecord.owner_id == owner_id,
                TaskRecord.deleted_at.is_(None),
            )
            .with_for_update()
        )
        return {record.id: record for record in result.all()}

    async def _partition(self, owner_id: str, ids: list[str], result: BulkMutationResult) -> list[str]:
        """Split ids into owned (returned) and not owned (recorded as failures)."""
        async with self._db.session("bulk_authorize", ids) as session:
            rows = await session.exec(
                select(TaskRecord.id).where(
                    TaskRecord.id.in_(ids),
                    TaskRecord.owner_id == owner_id,
                    TaskRecord.deleted_at.is_(None),
                )
            )
            owned_ids = set(rows.all())

        owned = []
        for task_id in ids:
            if task_id in owned_ids:
                owned.append(task_id)
            else:
                result.fail(task_id, NOT_FOUND_REASON)
        return owned

    @staticmethod
    async def _next_sort_order(session: AsyncSession, owner_id: str) -> int:
        result = await session.exec(
            select(func.coalesce(func.max(TaskRecord.sort_order), 0)).where(
                TaskRecord.owner_id == owner_id, TaskRecord.deleted_at.is_(None)
            )
        )
        return int(result.one()) + 1

    @staticmethod
    async def _check_category(session: AsyncSession, owner_id: str, category_id: str) -> None:
        result = await session.exec(
            select(CategoryRecord.id).where(
                CategoryRecord.id == category_id,
                CategoryRecord.owner_id == owner_id,
                CategoryRecord.deleted_at.is_(None),
            )
        )
        if result.first() is None:
            raise ValidationError(f"Category {category_id} not found")

    async def _invalidate(self, owner_id: str, task_ids: Iterable[str] = ()) -> None:
        await self._cache.invalidate_tags(*mutation_tags(owner_id, task_ids))

    def _emit(self, event: str, **fields: Any) -> None:
        try:
            self._events(event, **fields)
        except Exception as e:
            logger.warning("Event sink failed for %s: %s", event, e)


def _require_owner(owner_id: str) -> None:
    if not owner_id:
        raise ValidationError("owner id is required")


def _dedupe(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def _coerce_order(item: TaskOrder | tuple[str, int] | dict[str, Any]) -> TaskOrder:
    if isinstance(item, (tuple, list)):
        if len(item) != 2:
            raise ValidationError("Reorder entries are (id, sort_order) pairs")
        item = {"id": item[0], "sort_order": item[1]}
    return coerce(TaskOrder, item)
