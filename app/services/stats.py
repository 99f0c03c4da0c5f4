import asyncio
from datetime import timedelta

from sqlalchemy import and_, case, extract, func
from sqlmodel import select

from app.database import Database
from app.models import CLOSED_STATUSES, CategoryRecord, Priority, TaskRecord, TaskStatus, get_utc_now
from app.schemas import CategoryCount, StatsSummary

DUE_SOON_WINDOW = timedelta(days=7)


class StatsAggregator:
    """
    Per-owner task statistics.

    One aggregate statement over the owner's live tasks plus one categories
    LEFT JOIN tasks statement (so empty categories report zero), issued
    concurrently. Soft-deleted tasks never count.
    """

    def __init__(self, database: Database, *, clock=get_utc_now):
        self._db = database
        self._clock = clock

    async def summarize(self, owner_id: str) -> StatsSummary:
        now = self._clock()
        aggregate, categories = await asyncio.gather(
            self._one(self._aggregate_statement(owner_id, now)),
            self._all(self._category_statement(owner_id)),
        )

        total = int(aggregate.total or 0)
        by_status = {s.value: int(getattr(aggregate, f"status_{s.value}") or 0) for s in TaskStatus}
        by_priority = {p.value: int(getattr(aggregate, f"priority_{p.value}") or 0) for p in Priority}
        completed = by_status[TaskStatus.COMPLETED.value]
        avg_seconds = getattr(aggregate, "avg_completion_seconds", None)

        return StatsSummary(
            total=total,
            tasks_by_status=by_status,
            tasks_by_priority=by_priority,
            overdue=int(aggregate.overdue or 0),
            due_soon=int(aggregate.due_soon or 0),
            completion_rate=round(completed / total * 100, 2) if total else 0.0,
            avg_completion_hours=round(float(avg_seconds) / 3600, 2) if avg_seconds is not None else None,
            tasks_by_category=[
                CategoryCount(
                    category_id=row.category_id,
                    category_name=row.category_name,
                    task_count=int(row.task_count or 0),
                )
                for row in categories
            ],
        )

    def _aggregate_statement(self, owner_id: str, now):
        still_open = TaskRecord.status.not_in(CLOSED_STATUSES)
        columns = [func.count(TaskRecord.id).label("total")]
        columns += [
            func.count(case((TaskRecord.status == s.value, 1))).label(f"status_{s.value}")
            for s in TaskStatus
        ]
        columns += [
            func.count(case((TaskRecord.priority == p.value, 1))).label(f"priority_{p.value}")
            for p in Priority
        ]
        columns.append(
            func.count(case((and_(TaskRecord.due_date < now, still_open), 1))).label("overdue")
        )
        columns.append(
            func.count(
                case(
                    (
                        and_(
                            TaskRecord.due_date >= now,
                            TaskRecord.due_date <= now + DUE_SOON_WINDOW,
                            still_open,
                        ),
                        1,
                    )
                )
            ).label("due_soon")
        )

        duration = self._duration_seconds()
        if duration is not None:
            columns.append(
                func.avg(
                    case(
                        (
                            and_(
                                TaskRecord.completed_at.is_not(None),
                                TaskRecord.created_at.is_not(None),
                            ),
                            duration,
                        )
                    )
                ).label("avg_completion_seconds")
            )

        return select(*columns).where(
            TaskRecord.owner_id == owner_id, TaskRecord.deleted_at.is_(None)
        )

    @staticmethod
    def _category_statement(owner_id: str):
        task_count = func.count(TaskRecord.id)
        return (
            select(
                CategoryRecord.id.label("category_id"),
                CategoryRecord.name.label("category_name"),
                task_count.label("task_count"),
            )
            .select_from(CategoryRecord)
            .outerjoin(
                TaskRecord,
                and_(
                    TaskRecord.category_id == CategoryRecord.id,
                    TaskRecord.owner_id == owner_id,
                    TaskRecord.deleted_at.is_(None),
                ),
            )
            .where(CategoryRecord.owner_id == owner_id, CategoryRecord.deleted_at.is_(None))
            .group_by(CategoryRecord.id, CategoryRecord.name)
            .order_by(task_count.desc(), CategoryRecord.name)
        )

    def _duration_seconds(self):
        """completed_at - created_at in seconds, per dialect; None when unsupported."""
        if self._db.dialect == "postgresql":
            return extract("epoch", TaskRecord.completed_at - TaskRecord.created_at)
        if self._db.dialect == "sqlite":
            return (func.julianday(TaskRecord.completed_at) - func.julianday(TaskRecord.created_at)) * 86400.0
        return None

    async def _one(self, stmt):
        async with self._db.session("stats") as session:
            result = await session.exec(stmt)
            return result.one()

    async def _all(self, stmt):
        async with self._db.session("stats") as session:
            result = await session.exec(stmt)
            return list(result.all())
