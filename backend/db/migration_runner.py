"""
SQLite migration runner for the memory stores.

Each store keeps its own migration directory under backend/db/migrations:
    migrations/graph/0001_description.sql
    migrations/index/0001_description.sql

Applied versions are tracked per database in `schema_migrations`.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout
from loguru import logger

MIGRATIONS_ROOT = Path(__file__).resolve().parent / "migrations"

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
_ROLLBACK_SUFFIX = ".rollback.sql"
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Local file path of a sqlite SQLAlchemy URL, or None for in-memory databases.

    Supports sqlite+aiosqlite:///path.db and sqlite:///path.db, with optional
    query strings.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported database URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


class MigrationRunner:
    """Discover and apply one store's SQL migrations under a file lock."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Union[Path, str],
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_path(database_url)
        self.migrations_dir = Path(migrations_dir)
        self.lock_file_path = (
            self._resolve_lock_path(lock_file_path)
            or self._resolve_lock_path(os.getenv("MEMORY_MIGRATION_LOCK_FILE", ""))
            or self._default_lock_path()
        )
        env_timeout = os.getenv("MEMORY_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _default_lock_path(self) -> Optional[Path]:
        if self.database_file is None:
            return None
        return self.database_file.with_name(self.database_file.name + ".migrate.lock")

    def _resolve_lock_path(
        self, raw_path: Optional[Union[Path, str]]
    ) -> Optional[Path]:
        if raw_path is None:
            return None
        text_value = str(raw_path).strip()
        if not text_value:
            return None
        candidate = Path(text_value).expanduser()
        if candidate.is_absolute():
            return candidate.resolve()
        if self.database_file is not None:
            return (self.database_file.parent / candidate).resolve()
        return candidate.resolve()

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migration_files = self.discover()
        # In-memory databases are created from ORM metadata on every start.
        if not migration_files or self.database_file is None:
            return []

        if self.lock_file_path is None:
            return self._apply_unlocked(migration_files)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply_unlocked(migration_files)
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for migration lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply_unlocked(self, migration_files: List[MigrationFile]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied_versions: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.row_factory = sqlite3.Row
            self._ensure_schema_table(conn)
            recorded = self._load_applied_checksums(conn)

            for migration in migration_files:
                recorded_checksum = recorded.get(migration.version)
                if recorded_checksum is not None:
                    if recorded_checksum != migration.checksum:
                        raise RuntimeError(
                            "Checksum mismatch for migration "
                            f"{migration.version}: recorded={recorded_checksum} "
                            f"current={migration.checksum}"
                        )
                    continue

                self._execute_sql_script(conn, migration.path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied_versions.append(migration.version)

        if applied_versions:
            logger.info(
                f"Applied migrations {applied_versions} from {self.migrations_dir.name} "
                f"to {self.database_file.name}"
            )
        return applied_versions

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []

        discovered: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            if path.name.endswith(_ROLLBACK_SUFFIX):
                continue
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            discovered.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=self._normalized_checksum(path.read_bytes()),
                )
            )
        return discovered

    @staticmethod
    def _normalized_checksum(content: bytes) -> str:
        """Checksum with line endings normalized, so CRLF checkouts still match."""
        try:
            normalized = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n")
            payload = normalized.encode("utf-8")
        except UnicodeDecodeError:
            payload = content
        return hashlib.sha256(payload).hexdigest()

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL,
                checksum TEXT NOT NULL
            )
            """
        )
        conn.commit()

    @staticmethod
    def _load_applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        cursor = conn.execute("SELECT version, checksum FROM schema_migrations")
        return {str(row["version"]): str(row["checksum"]) for row in cursor.fetchall()}

    @classmethod
    def _execute_sql_script(cls, conn: sqlite3.Connection, script: str) -> None:
        for statement in cls.split_statements(script):
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as exc:
                # Re-running ADD COLUMN against an already-migrated table is fine.
                if _ADD_COLUMN_PATTERN.match(statement) and (
                    "duplicate column name" in str(exc).lower()
                ):
                    continue
                raise

    @staticmethod
    def split_statements(script: str) -> List[str]:
        """Split a script on semicolons that are outside quoted strings."""
        statements: List[str] = []
        buffer: List[str] = []
        quote: Optional[str] = None

        for char in script:
            if char in ("'", '"'):
                if quote is None:
                    quote = char
                elif quote == char:
                    quote = None
            if char == ";" and quote is None:
                statements.append("".join(buffer))
                buffer = []
            else:
                buffer.append(char)
        statements.append("".join(buffer))

        result: List[str] = []
        for statement in statements:
            candidate = statement.strip()
            meaningful = [
                line for line in candidate.splitlines()
                if line.strip() and not line.strip().startswith("--")
            ]
            if meaningful:
                result.append(candidate)
        return result


async def apply_pending_migrations(
    database_url: str, migrations_dir: Union[Path, str]
) -> List[str]:
    """Convenience wrapper used by the stores' `init_db`."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
