# tests/conftest.py

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.cache.backends import MemoryCacheBackend
from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.database import Database
from app.models import CategoryRecord
from app.services.task_service import TaskService

OWNER = "user-1"
OTHER = "user-2"


class Clock:
    """Settable clock shared by the engine and aggregator under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSink:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, **fields) -> None:
        self.events.append((event, fields))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class SpyCache(CacheLayer):
    """CacheLayer that remembers every tag set it was asked to invalidate."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.invalidated: list[set[str]] = []

    async def invalidate_tags(self, *tags: str) -> int:
        self.invalidated.append(set(tags))
        return await super().invalidate_tags(*tags)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    # A file database: count and data reads run on two connections at once.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}",
        cache_backend="memory",
        cache_maxsize=256,
    )


@pytest.fixture()
async def database(settings: Settings):
    db = Database.from_settings(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture()
def cache() -> SpyCache:
    return SpyCache(MemoryCacheBackend(maxsize=256), default_ttl=60)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def clock() -> Clock:
    return Clock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def service(database, cache, settings, sink, clock) -> TaskService:
    return TaskService(database, cache, settings, events=sink, clock=clock)


@pytest.fixture()
def engine(service):
    return service.mutations


@pytest.fixture()
def make_category(database):
    async def _make(name: str, owner_id: str = OWNER, **fields) -> CategoryRecord:
        record = CategoryRecord(owner_id=owner_id, name=name, **fields)
        async with database.transaction("seed_category") as session:
            session.add(record)
        return record

    return _make
