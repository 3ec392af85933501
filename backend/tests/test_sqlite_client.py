import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from db import sqlite_client as sqlite_client_module
from db.sqlite_client import SQLiteClient, get_sqlite_client, memory_database_url
from scoped_memory import (
    CreateMemoryEntry,
    ListMemoryOptions,
    MemoryCreateError,
    MemoryKind,
    MemoryValidationError,
    MissingStoreError,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _payload(**overrides) -> CreateMemoryEntry:
    values = {
        "project_id": "P1",
        "kind": MemoryKind.DECISION,
        "title": "Use WAL",
        "content": "Readers never block the writer.",
    }
    values.update(overrides)
    return CreateMemoryEntry(**values)


@pytest.mark.asyncio
async def test_create_and_get_round_trips_optional_fields(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        created = await client.create_memory_entry(
            _payload(
                bead_id="B1",
                epic_id="E1",
                agent_name="builder",
                data={"files": ["a.py"], "attempt": 2},
                intent_anchors=["lifecycle.execute"],
            ),
            created_at=NOW,
        )
        fetched = await client.get_memory_entry(created.id)
        bare = await client.create_memory_entry(_payload(title="bare"), created_at=NOW)
        bare_fetched = await client.get_memory_entry(bare.id)
    finally:
        await client.close()

    assert fetched == created
    assert fetched.kind is MemoryKind.DECISION
    assert fetched.data == {"files": ["a.py"], "attempt": 2}
    assert fetched.intent_anchors == ["lifecycle.execute"]
    assert fetched.relevance_score == 1.0
    assert fetched.created_at == NOW
    assert fetched.scope_label == "bead:B1"

    assert bare_fetched.bead_id is None
    assert bare_fetched.epic_id is None
    assert bare_fetched.data is None
    assert bare_fetched.intent_anchors is None
    assert bare_fetched.expires_at is None
    assert bare_fetched.scope_label == "project"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"kind": "gossip"},
        {"title": "   "},
        {"content": ""},
        {"project_id": ""},
        {"relevance_score": 1.5},
        {"relevance_score": -0.1},
    ],
)
async def test_create_rejects_invalid_entries(tmp_path: Path, overrides) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        with pytest.raises(MemoryValidationError) as excinfo:
            await client.create_memory_entry(_payload(**overrides))
        stats = await client.get_memory_stats("P1")
    finally:
        await client.close()

    assert excinfo.value.code == "INVALID_ENTRY"
    assert stats["total_entries"] == 0


@pytest.mark.asyncio
async def test_soft_delete_is_one_shot(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        entry = await client.create_memory_entry(_payload())
        first = await client.soft_delete_memory_entry(entry.id, now=NOW)
        second = await client.soft_delete_memory_entry(entry.id, now=NOW + timedelta(hours=1))
        missing = await client.soft_delete_memory_entry("no-such-id")
        fetched = await client.get_memory_entry(entry.id)
    finally:
        await client.close()

    assert first == NOW
    assert second is None
    assert missing is None
    assert fetched.deleted_at == NOW


@pytest.mark.asyncio
async def test_list_filters_and_ordering(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        await client.create_memory_entry(_payload(title="a", bead_id="B1"), created_at=NOW)
        await client.create_memory_entry(
            _payload(title="b", bead_id="B1", kind=MemoryKind.CHECKPOINT, relevance_score=0.5),
            created_at=NOW,
        )
        await client.create_memory_entry(_payload(title="c", epic_id="E1"), created_at=NOW)
        gone = await client.create_memory_entry(_payload(title="d", bead_id="B1"), created_at=NOW)
        await client.soft_delete_memory_entry(gone.id, now=NOW)
        await client.create_memory_entry(
            _payload(title="e", bead_id="B1", expires_at=NOW - timedelta(days=1)),
            created_at=NOW - timedelta(days=3),
        )

        by_bead = await client.list_memory_entries(ListMemoryOptions(project_id="P1", bead_id="B1"), now=NOW)
        with_expired = await client.list_memory_entries(
            ListMemoryOptions(project_id="P1", bead_id="B1", include_expired=True), now=NOW
        )
        with_deleted = await client.list_memory_entries(
            ListMemoryOptions(project_id="P1", bead_id="B1", include_deleted=True), now=NOW
        )
        checkpoints = await client.list_memory_entries(
            ListMemoryOptions(project_id="P1", kinds=[MemoryKind.CHECKPOINT]), now=NOW
        )
        limited = await client.list_memory_entries(ListMemoryOptions(project_id="P1", limit=2), now=NOW)
    finally:
        await client.close()

    assert [m.title for m in by_bead] == ["a", "b"]
    assert [m.title for m in with_expired] == ["a", "e", "b"]
    assert sorted(m.title for m in with_deleted) == ["a", "b", "d"]
    assert [m.title for m in checkpoints] == ["b"]
    assert len(limited) == 2


@pytest.mark.asyncio
async def test_expire_purge_and_stats(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        await client.create_memory_entry(_payload(title="keep", kind=MemoryKind.CONSTRAINT))
        await client.create_memory_entry(
            _payload(title="stale", kind=MemoryKind.NEXT_STEP, expires_at=NOW - timedelta(days=1))
        )
        old = await client.create_memory_entry(_payload(title="old delete"))
        await client.soft_delete_memory_entry(old.id, now=NOW - timedelta(days=45))

        expired = await client.expire_old_entries(now=NOW)
        stats_after_expire = await client.get_memory_stats("P1")
        purged = await client.purge_deleted_entries(older_than_days=30, now=NOW)
        stats_after_purge = await client.get_memory_stats("P1")
    finally:
        await client.close()

    assert expired == 1
    assert stats_after_expire["total_entries"] == 3
    assert stats_after_expire["deleted_entries"] == 2
    assert stats_after_expire["active_entries"] == 1
    assert stats_after_expire["entries_by_kind"]["constraint"] == 1
    assert stats_after_expire["entries_by_kind"]["next_step"] == 0
    assert set(stats_after_expire["entries_by_kind"]) == {k.value for k in MemoryKind}

    # The freshly expired row was soft-deleted at NOW, inside the retention window.
    assert purged == 1
    assert stats_after_purge["total_entries"] == 2


@pytest.mark.asyncio
async def test_update_relevance_score(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "memory.db"))
    await client.init_db()
    try:
        entry = await client.create_memory_entry(_payload())
        assert await client.update_relevance_score(entry.id, 0.25) is True
        assert await client.update_relevance_score("missing", 0.25) is False
        with pytest.raises(MemoryValidationError):
            await client.update_relevance_score(entry.id, 2)
        fetched = await client.get_memory_entry(entry.id)
    finally:
        await client.close()

    assert fetched.relevance_score == 0.25


def test_database_exists_tracks_the_file(tmp_path: Path) -> None:
    db_path = tmp_path / "later.db"
    client = SQLiteClient(_sqlite_url(db_path))
    assert client.database_exists() is False
    db_path.write_bytes(b"")
    assert client.database_exists() is True


@pytest.mark.asyncio
async def test_client_registry_caches_per_database(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(sqlite_client_module, "_sqlite_clients", {})
    monkeypatch.setenv("DATABASE_URL", _sqlite_url(tmp_path / "default.db"))

    project = tmp_path / "proj"
    a = get_sqlite_client(str(project))
    b = get_sqlite_client(str(project))
    default = get_sqlite_client()

    assert a is b
    assert a is not default
    assert a.database_url == memory_database_url(str(project))
    assert a.database_url.endswith("/.beads/memory.db")
    assert default.database_url == _sqlite_url(tmp_path / "default.db")

    await sqlite_client_module.close_sqlite_client()
    assert sqlite_client_module._sqlite_clients == {}


def test_default_client_requires_database_url(monkeypatch) -> None:
    monkeypatch.setattr(sqlite_client_module, "_sqlite_clients", {})
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(MissingStoreError, match="DATABASE_URL") as excinfo:
        get_sqlite_client()
    assert excinfo.value.code == "MISSING_PATH"
    assert isinstance(excinfo.value, ValueError)


@pytest.mark.asyncio
async def test_insert_failure_raises_create_error(tmp_path: Path) -> None:
    db_path = tmp_path / "broken.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE unrelated (id INTEGER PRIMARY KEY)")
        conn.commit()

    client = SQLiteClient(_sqlite_url(db_path))
    try:
        with pytest.raises(MemoryCreateError) as excinfo:
            await client.create_memory_entry(_payload())
    finally:
        await client.close()

    assert excinfo.value.code == "CREATE_FAILED"
    assert excinfo.value.__cause__ is not None
