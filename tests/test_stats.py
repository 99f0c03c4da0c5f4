from datetime import timedelta

import pytest

from app.services.stats import StatsAggregator

from conftest import OTHER, OWNER


@pytest.fixture()
def aggregator(database, clock):
    return StatsAggregator(database, clock=clock)


async def test_empty_owner(aggregator):
    stats = await aggregator.summarize(OWNER)

    assert stats.total == 0
    assert stats.completion_rate == 0.0
    assert stats.avg_completion_hours is None
    assert stats.tasks_by_status == {"pending": 0, "in_progress": 0, "completed": 0, "archived": 0}
    assert stats.tasks_by_priority == {"high": 0, "medium": 0, "low": 0, "none": 0}
    assert stats.tasks_by_category == []


async def test_counts_by_status_and_priority(engine, aggregator):
    await engine.create(OWNER, {"title": "a", "priority": "high"})
    await engine.create(OWNER, {"title": "b", "priority": "high", "status": "in_progress"})
    await engine.create(OWNER, {"title": "c", "status": "completed"})
    await engine.create(OWNER, {"title": "d", "status": "archived"})
    await engine.create(OTHER, {"title": "e", "priority": "high"})

    stats = await aggregator.summarize(OWNER)

    assert stats.total == 4
    assert stats.tasks_by_status == {"pending": 1, "in_progress": 1, "completed": 1, "archived": 1}
    assert stats.tasks_by_priority == {"high": 2, "medium": 0, "low": 0, "none": 2}
    assert stats.completion_rate == 25.0


async def test_soft_deleted_tasks_do_not_count(engine, aggregator):
    task = await engine.create(OWNER, {"title": "a"})
    await engine.create(OWNER, {"title": "b"})
    await engine.delete(task.id, OWNER)

    assert (await aggregator.summarize(OWNER)).total == 1


async def test_overdue_and_due_soon(engine, aggregator, clock):
    now = clock.now
    await engine.create(OWNER, {"title": "late", "due_date": now - timedelta(hours=1)})
    await engine.create(OWNER, {"title": "late done", "due_date": now - timedelta(hours=1), "status": "completed"})
    await engine.create(OWNER, {"title": "soon", "due_date": now + timedelta(days=6)})
    await engine.create(OWNER, {"title": "soon shelved", "due_date": now + timedelta(days=2), "status": "archived"})
    await engine.create(OWNER, {"title": "far", "due_date": now + timedelta(days=8)})
    await engine.create(OWNER, {"title": "undated"})

    stats = await aggregator.summarize(OWNER)

    assert stats.overdue == 1
    assert stats.due_soon == 1


async def test_average_completion_hours(engine, aggregator, clock):
    quick = await engine.create(OWNER, {"title": "quick"})
    slow = await engine.create(OWNER, {"title": "slow"})
    await engine.create(OWNER, {"title": "open"})

    clock.advance(hours=1)
    await engine.update(quick.id, OWNER, {"status": "completed"})
    clock.advance(hours=2)
    await engine.update(slow.id, OWNER, {"status": "completed"})

    stats = await aggregator.summarize(OWNER)

    assert stats.avg_completion_hours == pytest.approx(2.0, abs=0.01)
    assert stats.completion_rate == pytest.approx(66.67)


async def test_category_breakdown_zero_fills(engine, aggregator, make_category):
    work = await make_category("Work")
    home = await make_category("Home")
    await make_category("Theirs", owner_id=OTHER)
    for title in ("a", "b"):
        await engine.create(OWNER, {"title": title, "category_id": work.id})
    await engine.create(OWNER, {"title": "loose"})

    stats = await aggregator.summarize(OWNER)

    assert [(c.category_name, c.task_count) for c in stats.tasks_by_category] == [
        ("Work", 2),
        ("Home", 0),
    ]
    assert stats.tasks_by_category[1].category_id == home.id


async def test_deleted_tasks_leave_category_counts(engine, aggregator, make_category):
    work = await make_category("Work")
    task = await engine.create(OWNER, {"title": "a", "category_id": work.id})
    await engine.delete(task.id, OWNER)

    stats = await aggregator.summarize(OWNER)

    assert [(c.category_name, c.task_count) for c in stats.tasks_by_category] == [("Work", 0)]
