"""
Shared async SQLite plumbing for the graph store and the relevance index.

Both stores own a separate database file (so either can be rebuilt on its
own), a key/value meta table, and the same commit/rollback session scope.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from engine.models import utc_now
from .migration_runner import apply_pending_migrations, sqlite_file_path


class SQLiteStore:
    """Async engine + session factory + meta table access."""

    meta_table = "store_meta"

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "sqlite+aiosqlite:///data/graph.db"
        """
        if not database_url:
            raise ValueError("database_url must not be empty")
        self.database_url = database_url
        database_file = sqlite_file_path(database_url)
        if database_file is not None:
            database_file.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def _create_schema(self, metadata: MetaData, migrations_dir: Path) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        await apply_pending_migrations(self.database_url, migrations_dir)

    @asynccontextmanager
    async def session(self):
        """Session scope: commit on success, rollback and re-raise on error."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _upsert_meta(self, session: AsyncSession, key: str, value: str) -> None:
        await session.execute(
            text(
                f"INSERT INTO {self.meta_table}(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": utc_now().isoformat(sep=" ")},
        )

    async def get_meta(self, key: str) -> Optional[str]:
        key_value = (key or "").strip()
        if not key_value:
            return None
        async with self.session() as session:
            result = await session.execute(
                text(f"SELECT value FROM {self.meta_table} WHERE key = :key"),
                {"key": key_value},
            )
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        key_value = (key or "").strip()
        if not key_value:
            raise ValueError("key must not be empty")
        async with self.session() as session:
            await self._upsert_meta(session, key_value, value)

    async def close(self) -> None:
        """Dispose the engine and its connections."""
        await self.engine.dispose()
