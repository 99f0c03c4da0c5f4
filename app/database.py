import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app import models  # noqa: F401  registers the tables on SQLModel.metadata
from app.core.config import Settings
from app.core.exceptions import StoreError

logger = logging.getLogger(__name__)


class Database:
    """
    Process-scoped handle on the relational store.

    Owns the async engine and session factory. Every SQLAlchemy failure
    leaving `session()` or `transaction()` is rolled back, logged with the
    operation name and id set only, and re-raised as StoreError.
    """

    def __init__(self, url: str | None = None, *, engine: AsyncEngine | None = None, echo: bool = False):
        if engine is None:
            if not url:
                raise ValueError("Database needs a url or an engine")
            engine = create_async_engine(
                url,
                echo=echo,
                future=True,
                pool_pre_ping=True,
                # Keep bound values out of exception messages and logs.
                hide_parameters=True,
            )
        self.engine = engine
        self.sessions = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.database_url, echo=settings.database_echo)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self, operation: str = "read", ids: Iterable[str] = ()) -> AsyncIterator[AsyncSession]:
        """Read session; no transaction is committed."""
        async with self.sessions() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                raise _store_error(operation, ids, exc) from exc

    @asynccontextmanager
    async def transaction(self, operation: str, ids: Iterable[str] = ()) -> AsyncIterator[AsyncSession]:
        """Session inside one transaction: commit on success, rollback on any error."""
        async with self.sessions() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as exc:
                raise _store_error(operation, ids, exc) from exc

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


def _store_error(operation: str, ids: Iterable[str], exc: SQLAlchemyError) -> StoreError:
    ids = list(ids)
    logger.error(
        "Store operation failed: operation=%s ids=%s error=%s",
        operation,
        ids,
        type(exc).__name__,
    )
    return StoreError(operation, ids)
