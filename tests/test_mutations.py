import logging

import pytest
from sqlmodel import SQLModel, select

from app.core.exceptions import AuthorizationError, NotFoundError, StoreError, ValidationError
from app.models import Priority, TaskRecord, TaskStatus

from conftest import OTHER, OWNER


async def raw_record(database, task_id):
    async with database.session() as session:
        result = await session.exec(select(TaskRecord).where(TaskRecord.id == task_id))
        return result.first()


async def test_create_assigns_id_and_defaults(engine):
    task = await engine.create(OWNER, {"title": "  Write report  ", "tags": ["Work", "work", " urgent"]})

    assert len(task.id) == 36
    assert task.title == "Write report"
    assert task.priority is Priority.NONE
    assert task.status is TaskStatus.PENDING
    assert task.tags == ["urgent", "work"]
    assert task.completed_at is None


async def test_create_appends_to_sort_order(engine):
    first = await engine.create(OWNER, {"title": "one"})
    second = await engine.create(OWNER, {"title": "two"})
    pinned = await engine.create(OWNER, {"title": "pinned", "sort_order": 50})
    other = await engine.create(OTHER, {"title": "elsewhere"})

    assert (first.sort_order, second.sort_order, pinned.sort_order) == (1, 2, 50)
    assert other.sort_order == 1


async def test_create_completed_is_stamped(engine, clock):
    task = await engine.create(OWNER, {"title": "done already", "status": "completed"})

    assert task.completed_at == clock.now
    assert task.completed_by == OWNER


@pytest.mark.parametrize(
    "payload",
    [
        {"title": ""},
        {"title": "x" * 256},
        {"title": "ok", "estimated_minutes": -1},
        {"title": "ok", "priority": "urgent"},
        {"title": "ok", "owner_id": OTHER},
    ],
)
async def test_create_rejects_bad_input(engine, payload):
    with pytest.raises(ValidationError):
        await engine.create(OWNER, payload)


async def test_create_rejects_foreign_category(engine, make_category):
    category = await make_category("Theirs", owner_id=OTHER)

    with pytest.raises(ValidationError):
        await engine.create(OWNER, {"title": "x", "category_id": category.id})


async def test_update_rejects_foreign_category_and_keeps_the_task(engine, database, make_category):
    task = await engine.create(OWNER, {"title": "x"})
    category = await make_category("Theirs", owner_id=OTHER)

    with pytest.raises(ValidationError, match="Category"):
        await engine.update(task.id, OWNER, {"title": "renamed", "category_id": category.id})

    record = await raw_record(database, task.id)
    assert record.title == "x"
    assert record.category_id is None


async def test_bulk_update_rejects_foreign_category(engine, make_category):
    task = await engine.create(OWNER, {"title": "x"})
    category = await make_category("Theirs", owner_id=OTHER)

    with pytest.raises(ValidationError):
        await engine.bulk_update(OWNER, [task.id], {"category_id": category.id})


async def test_update_is_partial(engine, clock):
    task = await engine.create(OWNER, {"title": "draft", "description": "keep me", "priority": "low"})
    clock.advance(minutes=5)

    updated = await engine.update(task.id, OWNER, {"priority": "high"})

    assert updated.priority is Priority.HIGH
    assert updated.description == "keep me"
    assert updated.updated_at == clock.now
    assert updated.created_at == task.created_at


async def test_update_can_clear_nullable_fields(engine, clock):
    task = await engine.create(OWNER, {"title": "t", "description": "text", "due_date": clock.now})

    updated = await engine.update(task.id, OWNER, {"description": None, "due_date": None})

    assert updated.description is None
    assert updated.due_date is None


async def test_update_rejects_null_for_required_fields(engine):
    task = await engine.create(OWNER, {"title": "t"})

    with pytest.raises(ValidationError):
        await engine.update(task.id, OWNER, {"title": None})


async def test_update_of_foreign_task_writes_nothing(engine, database):
    task = await engine.create(OWNER, {"title": "mine"})

    with pytest.raises(NotFoundError):
        await engine.update(task.id, OTHER, {"title": "hijacked"})

    assert (await raw_record(database, task.id)).title == "mine"


async def test_empty_update_returns_current_task(engine, cache):
    task = await engine.create(OWNER, {"title": "same"})
    cache.invalidated.clear()

    assert await engine.update(task.id, OWNER, {}) == task
    assert cache.invalidated == []


async def test_completion_round_trips(engine, clock):
    task = await engine.create(OWNER, {"title": "t"})
    done_at = clock.advance(hours=1)
    done = await engine.update(task.id, OWNER, {"status": "completed"})
    clock.advance(hours=1)
    again = await engine.update(task.id, OWNER, {"status": "completed", "title": "t2"})
    reopened = await engine.update(task.id, OWNER, {"status": "pending"})

    assert done.completed_at == done_at
    assert done.completed_by == OWNER
    assert again.completed_at == done.completed_at
    assert reopened.completed_at is None
    assert reopened.completed_by is None
    assert reopened.status == task.status


async def test_soft_delete_and_restore(engine, database):
    task = await engine.create(OWNER, {"title": "t"})

    assert await engine.delete(task.id, OWNER) is True
    assert (await raw_record(database, task.id)).deleted_at is not None
    with pytest.raises(NotFoundError):
        await engine.delete(task.id, OWNER)

    restored = await engine.restore(task.id, OWNER)
    assert restored.deleted_at is None
    with pytest.raises(NotFoundError):
        await engine.restore(task.id, OWNER)


async def test_hard_delete_needs_a_grant(engine, database):
    task = await engine.create(OWNER, {"title": "t"})
    await engine.delete(task.id, OWNER)

    with pytest.raises(AuthorizationError):
        await engine.hard_delete(task.id, OWNER)
    with pytest.raises(NotFoundError):
        await engine.hard_delete(task.id, OTHER, authorized=True)

    assert await engine.hard_delete(task.id, OWNER, authorized=True) is True
    assert await raw_record(database, task.id) is None


async def test_duplicate(engine):
    task = await engine.create(
        OWNER, {"title": "source", "priority": "high", "status": "completed", "tags": ["a"]}
    )

    copy = await engine.duplicate(task.id, OWNER)
    named = await engine.duplicate(task.id, OWNER, title="Renamed")

    assert copy.id != task.id
    assert copy.title == "Copy of source"
    assert copy.status is TaskStatus.PENDING
    assert copy.completed_at is None
    assert (copy.priority, copy.tags) == (task.priority, task.tags)
    assert named.title == "Renamed"
    with pytest.raises(NotFoundError):
        await engine.duplicate(task.id, OTHER)


async def test_bulk_update_reports_partial_failure(engine, database):
    a = await engine.create(OWNER, {"title": "a"})
    b = await engine.create(OTHER, {"title": "b"})
    c = await engine.create(OWNER, {"title": "c"})

    result = await engine.bulk_update(OWNER, [a.id, b.id, c.id, a.id], {"priority": "high"})

    assert result.succeeded == [a.id, c.id]
    assert result.failed == [b.id]
    assert result.errors == {b.id: "Task not found or access denied"}
    assert (result.succeeded_count, result.failed_count) == (2, 1)
    assert (await raw_record(database, b.id)).priority == "none"
    assert (await raw_record(database, c.id)).priority == "high"


async def test_bulk_update_validates_before_touching_rows(engine, database):
    a = await engine.create(OWNER, {"title": "a"})

    with pytest.raises(ValidationError):
        await engine.bulk_update(OWNER, [a.id], {})
    with pytest.raises(ValidationError):
        await engine.bulk_update(OWNER, [a.id], {"status": "bogus"})

    assert (await raw_record(database, a.id)).status == "pending"


async def test_bulk_update_with_no_ids_is_empty(engine):
    result = await engine.bulk_update(OWNER, [], {"priority": "high"})
    assert result.succeeded == [] and result.failed == []


async def test_bulk_delete(engine, database):
    a = await engine.create(OWNER, {"title": "a"})
    b = await engine.create(OTHER, {"title": "b"})

    result = await engine.bulk_delete(OWNER, [a.id, b.id, "missing"])

    assert result.succeeded == [a.id]
    assert result.failed == [b.id, "missing"]
    assert (await raw_record(database, a.id)).deleted_at is not None
    assert (await raw_record(database, b.id)).deleted_at is None


async def test_reorder_skips_foreign_rows(engine, database):
    t1 = await engine.create(OWNER, {"title": "t1"})
    t2 = await engine.create(OWNER, {"title": "t2"})
    foreign = await engine.create(OTHER, {"title": "f"})

    await engine.reorder(OWNER, [(t1.id, 3), {"id": t2.id, "sort_order": 1}, (foreign.id, 9)])

    assert (await raw_record(database, t1.id)).sort_order == 3
    assert (await raw_record(database, t2.id)).sort_order == 1
    assert (await raw_record(database, foreign.id)).sort_order == 1


async def test_reorder_rejects_malformed_pairs(engine):
    with pytest.raises(ValidationError):
        await engine.reorder(OWNER, [("only-id",)])


async def test_every_mutation_emits_an_event(engine, sink):
    task = await engine.create(OWNER, {"title": "t"})
    await engine.update(task.id, OWNER, {"title": "u"})
    await engine.delete(task.id, OWNER)
    await engine.restore(task.id, OWNER)
    await engine.bulk_update(OWNER, [task.id], {"priority": "low"})
    await engine.reorder(OWNER, [(task.id, 4)])
    await engine.bulk_delete(OWNER, [task.id])
    await engine.hard_delete(task.id, OWNER, authorized=True)

    assert sink.names() == [
        "task.created",
        "task.updated",
        "task.deleted",
        "task.restored",
        "task.bulk_updated",
        "task.reordered",
        "task.bulk_deleted",
        "task.hard_deleted",
    ]
    assert sink.events[1][1]["fields"] == ["title"]


async def test_failing_event_sink_does_not_fail_the_write(engine, caplog):
    caplog.set_level(logging.WARNING, logger="app.services.mutations")

    def broken(event, **fields):
        raise RuntimeError("sink down")

    engine._events = broken

    task = await engine.create(OWNER, {"title": "still written"})
    assert task.title == "still written"
    assert "Event sink failed for task.created: sink down" in caplog.text


async def test_store_failure_surfaces_as_store_error(engine, database):
    async with database.engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    with pytest.raises(StoreError) as excinfo:
        await engine.create(OWNER, {"title": "nowhere to go"})

    assert excinfo.value.operation == "create"
    assert "nowhere to go" not in str(excinfo.value)
