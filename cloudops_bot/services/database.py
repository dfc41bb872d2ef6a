"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..orm.base import Base

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    """WAL lets worker processes write while the server reads; FKs enable cascades."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseService:
    """Owns the engine and hands out transactional sessions.

    The event server and every worker process open their own instance
    against the same SQLite file; there is no shared global.
    """

    def __init__(self, database_path: str | Path):
        self.database_path = Path(database_path).expanduser()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{self.database_path}",
            echo=False,
            pool_pre_ping=True,
            connect_args={"timeout": BUSY_TIMEOUT_SECONDS},
        )
        event.listen(self.engine.sync_engine, "connect", _configure_sqlite)

        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def initialize(self) -> None:
        """Create tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Database ready at %s", self.database_path)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional scope: commit on success, roll back on any error."""
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()


async def init_db_service(database_path: str | Path) -> DatabaseService:
    """Open the database at database_path and make sure the schema exists."""
    db_service = DatabaseService(database_path)
    await db_service.initialize()
    return db_service
