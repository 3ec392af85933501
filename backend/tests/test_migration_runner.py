import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.migration_runner import (
    MigrationRunner,
    extract_sqlite_file_path,
    split_sql_statements,
)
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_migration(migrations_dir: Path, name: str, sql: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    path = migrations_dir / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1
        version = conn.execute("SELECT version FROM schema_migrations").fetchone()[0]
        assert version == "0001"


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_runner_ignores_line_ending_changes(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS a (id INTEGER);\nCREATE TABLE IF NOT EXISTS b (id INTEGER);\n",
    )
    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    assert await runner.apply_pending() == ["0001"]

    migration_file.write_bytes(
        b"CREATE TABLE IF NOT EXISTS a (id INTEGER);\r\nCREATE TABLE IF NOT EXISTS b (id INTEGER);\r\n"
    )
    assert await runner.apply_pending() == []


@pytest.mark.asyncio
async def test_sqlite_client_init_db_creates_memory_entry_indexes(tmp_path: Path) -> None:
    db_path = tmp_path / ".beads" / "memory.db"

    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT version FROM schema_migrations WHERE version = '0001'"
        ).fetchone()
        assert row is not None

        columns = {
            col["name"]
            for col in conn.execute("PRAGMA table_info(memory_entries)").fetchall()
        }
        assert {
            "id",
            "project_id",
            "bead_id",
            "epic_id",
            "kind",
            "title",
            "content",
            "relevance_score",
            "expires_at",
            "deleted_at",
            "created_at",
        } <= columns

        index_names = {
            row["name"]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert "idx_memory_project" in index_names
        assert "idx_memory_bead" in index_names
        assert "idx_memory_epic" in index_names
        assert "idx_memory_constraints" in index_names
        assert "idx_memory_expires" in index_names


@pytest.mark.asyncio
async def test_sqlite_client_init_db_on_fresh_database_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"
    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    await client.init_db()
    await client.close()

    with sqlite3.connect(db_path) as conn:
        version_count = conn.execute(
            "SELECT COUNT(*) FROM schema_migrations WHERE version='0001'"
        ).fetchone()[0]
        assert version_count == 1


@pytest.mark.asyncio
async def test_migration_runner_handles_database_url_query_params(
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "memory-with-query.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    database_url = f"{_sqlite_url(db_path)}?cache=shared"
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir)
    applied = await runner.apply_pending()

    assert applied == ["0001"]
    assert db_path.exists()


@pytest.mark.asyncio
async def test_migration_runner_serializes_concurrent_apply(tmp_path: Path) -> None:
    db_path = tmp_path / "concurrent.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner_a = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    runner_b = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    results = await asyncio.gather(runner_a.apply_pending(), runner_b.apply_pending())

    flattened = [version for batch in results for version in batch]
    assert flattened.count("0001") == 1

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "timeout.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    lock_path = tmp_path / "migration.lock"
    with FileLock(str(lock_path), timeout=1):
        runner = MigrationRunner(
            _sqlite_url(db_path),
            migrations_dir=migrations_dir,
            lock_file_path=lock_path,
            lock_timeout_seconds=0.01,
        )
        with pytest.raises(RuntimeError, match="Timed out waiting for migration lock"):
            await runner.apply_pending()


def test_migration_runner_normalizes_relative_env_lock_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "dbdir" / "memory.db"

    monkeypatch.setenv("DB_MIGRATION_LOCK_FILE", "locks/migrate.lock")
    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=tmp_path / "migrations")

    expected = (db_path.parent / "locks/migrate.lock").resolve()
    assert runner.lock_file_path == expected


@pytest.mark.asyncio
async def test_migration_runner_skips_in_memory_database(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(
        "sqlite+aiosqlite:///:memory:", migrations_dir=migrations_dir
    )
    applied = await runner.apply_pending()
    assert applied == []


def test_extract_sqlite_file_path_rejects_other_backends() -> None:
    assert extract_sqlite_file_path("sqlite+aiosqlite:///:memory:") is None
    assert extract_sqlite_file_path("sqlite:////tmp/a.db") == Path("/tmp/a.db")
    with pytest.raises(ValueError):
        extract_sqlite_file_path("postgresql+asyncpg://localhost/db")


def test_split_sql_statements_keeps_quoted_semicolons() -> None:
    statements = split_sql_statements(
        "-- header\nCREATE TABLE t (v TEXT);\n"
        "INSERT INTO t VALUES ('a;b');\n-- trailing comment\n"
    )
    assert statements == [
        "CREATE TABLE t (v TEXT)",
        "INSERT INTO t VALUES ('a;b')",
    ]
