"""Async engine, session factory and unit-of-work helper."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bonus_ledger.core.settings import settings


def enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    """Have SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside a real transaction on SQLite."""

    sync_engine = async_engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _emit_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")


engine = create_async_engine(settings.database_url, echo=settings.database_echo, future=True)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block atomically.

    Inside an already open transaction the block runs under a SAVEPOINT: its
    writes roll back on error while the caller's transaction stays usable,
    and the outermost caller decides when to commit. Otherwise the block gets
    a transaction of its own, committed on success and rolled back on error.
    """

    if session.in_transaction():
        async with session.begin_nested():
            yield session
        return

    async with session.begin():
        yield session
