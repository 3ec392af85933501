import json
from pathlib import Path

import pytest

import mcp_server
from db.sqlite_client import SQLiteClient


def _use_store(monkeypatch, tmp_path: Path) -> SQLiteClient:
    store = SQLiteClient(f"sqlite+aiosqlite:///{tmp_path / '.beads' / 'memory.db'}")
    monkeypatch.setattr(mcp_server, "get_sqlite_client", lambda project_path=None: store)
    monkeypatch.setenv("MEMORY_PROJECT_ID", "P1")
    return store


@pytest.mark.asyncio
async def test_write_then_read_memory(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        bead = json.loads(
            await mcp_server.write_memory(
                kind="decision",
                title="Schema",
                content="Add partial indexes",
                bead_id="B1",
                epic_id="E1",
                intent_anchors=["lifecycle.execute"],
            )
        )
        epic = json.loads(
            await mcp_server.write_memory(kind="next_step", title="Next", content="API", epic_id="E1")
        )
        project = json.loads(
            await mcp_server.write_memory(kind="constraint", title="Offline", content="no network")
        )
        raw = await mcp_server.read_memory(bead_id="B1", epic_id="E1")
    finally:
        await store.close()

    assert bead["ok"] is True
    assert bead["scope"] == "bead:B1"
    assert epic["scope"] == "epic:E1"
    assert project["scope"] == "project"
    assert project["id"] in project["message"]

    payload = json.loads(raw)
    assert payload["ok"] is True
    assert payload["summary"] == {
        "bead_memories": 1,
        "epic_memories": 1,
        "project_constraints": 1,
        "active_constraints": 1,
        "total_returned": 3,
    }
    assert [m["title"] for m in payload["memories"]] == ["Schema", "Next", "Offline"]
    assert payload["memories"][0]["intent_anchors"] == ["lifecycle.execute"]


@pytest.mark.asyncio
async def test_read_memory_caps_combined_list(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        for i in range(4):
            await mcp_server.write_memory(kind="checkpoint", title=f"cp{i}", content="x", bead_id="B1")
        await mcp_server.write_memory(kind="constraint", title="rule", content="x")
        payload = json.loads(await mcp_server.read_memory(bead_id="B1", limit=2))
    finally:
        await store.close()

    assert payload["summary"]["bead_memories"] == 2
    assert payload["summary"]["total_returned"] == 2
    assert len(payload["memories"]) == 2


@pytest.mark.asyncio
async def test_write_memory_validation_returns_json(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        bad_kind = json.loads(await mcp_server.write_memory(kind="rumor", title="t", content="c"))
        no_title = json.loads(await mcp_server.write_memory(kind="decision", title="", content="c"))
    finally:
        await store.close()

    assert bad_kind["ok"] is False
    assert "Invalid kind: rumor" in bad_kind["error"]
    assert no_title == {"ok": False, "error": "Missing required field: title"}
    assert not (tmp_path / ".beads" / "memory.db").exists()


@pytest.mark.asyncio
async def test_search_memory_ranks_results(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        await mcp_server.write_memory(kind="decision", title="Cache for B1", content="lru", bead_id="B1")
        await mcp_server.write_memory(kind="ci_note", title="cache flake", content="retry")
        payload = json.loads(await mcp_server.search_memory("CACHE"))
        bead_only = json.loads(await mcp_server.search_memory("cache", bead_id="B1"))
        empty_query = json.loads(await mcp_server.search_memory("  "))
    finally:
        await store.close()

    assert payload["ok"] is True
    assert payload["count"] == 2
    assert [r["title"] for r in payload["results"]] == ["Cache for B1", "cache flake"]
    assert payload["results"][0]["relevance_score"] > payload["results"][1]["relevance_score"]
    assert [r["title"] for r in bead_only["results"]] == ["Cache for B1"]
    assert empty_query == {"ok": False, "error": "Missing required field: query"}


@pytest.mark.asyncio
async def test_memory_brief_tool(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        await mcp_server.write_memory(kind="decision", title="Pick SQLite", content="x", bead_id="B1")
        await mcp_server.write_memory(kind="constraint", title="Offline", content="x")
        payload = json.loads(await mcp_server.memory_brief(bead_id="B1", max_tokens=500))
    finally:
        await store.close()

    assert payload["ok"] is True
    assert payload["included_count"] == 2
    assert payload["text"].index("Offline") < payload["text"].index("Pick SQLite")


@pytest.mark.asyncio
async def test_tools_report_missing_project_id(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    monkeypatch.delenv("MEMORY_PROJECT_ID", raising=False)
    try:
        payload = json.loads(await mcp_server.read_memory(bead_id="B1"))
    finally:
        await store.close()

    assert payload["ok"] is False
    assert "MEMORY_PROJECT_ID" in payload["error"]


@pytest.mark.asyncio
async def test_read_memory_without_database_is_empty(tmp_path: Path, monkeypatch) -> None:
    store = _use_store(monkeypatch, tmp_path)
    try:
        payload = json.loads(await mcp_server.read_memory(bead_id="B1"))
    finally:
        await store.close()

    assert payload["ok"] is True
    assert payload["summary"]["total_returned"] == 0
    assert payload["memories"] == []
