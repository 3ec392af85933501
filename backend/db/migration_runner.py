"""
SQLite migration runner for the memory entry store.

Migrations are SQL files under backend/db/migrations named like:
    0001_description.sql

Applied versions and their checksums are recorded in `schema_migrations`.
Concurrent processes booting against the same database serialize on a file
lock placed next to the database file.
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
from typing import Dict, List, Optional
from urllib.parse import unquote
from filelock import FileLock, Timeout


_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Local file path of a sqlite SQLAlchemy URL, or None for in-memory databases.

    Supports sqlite+aiosqlite:///path.db and sqlite:///path.db.
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :].split("?", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL. Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def _checksum(content: bytes) -> str:
    # CRLF and LF checkouts of the same file must hash identically.
    try:
        content = (
            content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
        )
    except UnicodeDecodeError:
        pass
    return hashlib.sha256(content).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quotes, dropping comment-only chunks."""
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

    cleaned: List[str] = []
    for statement in statements:
        lines = [
            line
            for line in statement.strip().splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        if lines:
            cleaned.append("\n".join(lines))
    return cleaned


class MigrationRunner:
    """Discover and apply SQL migrations with version tracking."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_file = extract_sqlite_file_path(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)

        configured_lock = os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        if lock_file_path is not None:
            self.lock_file_path: Optional[Path] = Path(lock_file_path)
        elif configured_lock:
            self.lock_file_path = self._resolve_lock_path(Path(configured_lock).expanduser())
        elif self.database_file is not None:
            self.lock_file_path = Path(f"{self.database_file}.migrate.lock")
        else:
            self.lock_file_path = None

        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _resolve_lock_path(self, path: Path) -> Path:
        # Relative lock paths are anchored next to the database file.
        if path.is_absolute() or self.database_file is None:
            return path
        return (self.database_file.parent / path).resolve()

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.is_dir():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            found.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=_checksum(path.read_bytes()),
                )
            )
        return found

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self.apply_pending_sync)

    def apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        if not migrations or self.database_file is None:
            # In-memory databases are built from ORM metadata on every boot.
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock: {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, migrations: List[MigrationFile]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = dict(
                conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
            )

            for migration in migrations:
                checksum = recorded.get(migration.version)
                if checksum is not None:
                    if checksum != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={checksum} current={migration.checksum}"
                        )
                    continue

                script = migration.path.read_text(encoding="utf-8")
                for statement in split_sql_statements(script):
                    conn.execute(statement)
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
                applied.append(migration.version)
        return applied


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLiteClient.init_db()."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
