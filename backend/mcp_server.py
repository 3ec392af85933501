"""
MCP Server for scoped project memory (SQLite Backend)

Tools:
- read_memory:   scoped memories (bead -> epic -> project constraints)
- write_memory:  create a memory entry with bead/epic/project scope
- search_memory: substring search with relevance ranking
- memory_brief:  token-budgeted brief for a working scope

Environment:
- MEMORY_PROJECT_ID:   project identifier used to scope every tool
- MEMORY_PROJECT_PATH: project root; the database is <root>/.beads/memory.db.
                       Falls back to DATABASE_URL when unset.
"""

import os
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv, find_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from db.sqlite_client import get_sqlite_client
from scoped_memory import (
    CreateMemoryEntry,
    MemoryBriefOptions,
    MemoryRankingContext,
    MemorySearchQuery,
    MemoryValidationError,
    ScopedMemoryQuery,
    build_scoped_brief,
    get_scoped_memories,
    rank_memories,
    search_memories,
)
from scoped_memory.types import (
    DEFAULT_MEMORY_BRIEF_TOKENS,
    MAX_MEMORY_LIMIT,
    MEMORY_KINDS,
    default_expiry,
    parse_kind,
)

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

# Initialize FastMCP server
mcp = FastMCP("beads-memory")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


DEFAULT_TOOL_LIMIT = _env_int("MEMORY_DEFAULT_LIMIT", 20, minimum=1)
TOOL_MAX_LIMIT = _env_int("MEMORY_MAX_LIMIT", MAX_MEMORY_LIMIT, minimum=1)
BRIEF_MAX_TOKENS = _env_int("MEMORY_BRIEF_MAX_TOKENS", DEFAULT_MEMORY_BRIEF_TOKENS, minimum=1)
APPLY_DEFAULT_RETENTION = _env_bool("MEMORY_APPLY_DEFAULT_RETENTION", False)


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _project_id() -> str:
    project_id = str(os.getenv("MEMORY_PROJECT_ID") or "").strip()
    if not project_id:
        raise MemoryValidationError("MEMORY_PROJECT_ID is not set")
    return project_id


def _project_client():
    return get_sqlite_client(os.getenv("MEMORY_PROJECT_PATH") or None)


def _effective_limit(limit: Any) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = 0
    if value <= 0:
        value = DEFAULT_TOOL_LIMIT
    return min(value, TOOL_MAX_LIMIT)


def _scope_label(bead_id: Optional[str], epic_id: Optional[str]) -> str:
    if bead_id:
        return f"bead:{bead_id}"
    if epic_id:
        return f"epic:{epic_id}"
    return "project"


def _memory_summary(memory) -> Dict[str, Any]:
    return {
        "id": memory.id,
        "kind": memory.kind.value,
        "title": memory.title,
        "content": memory.content,
        "bead_id": memory.bead_id,
        "epic_id": memory.epic_id,
        "intent_anchors": memory.intent_anchors,
        "created_at": memory.created_at.isoformat(),
    }


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool()
async def read_memory(
    bead_id: Optional[str] = None,
    epic_id: Optional[str] = None,
    kinds: Optional[List[str]] = None,
    limit: int = 20,
) -> str:
    """
    Read memories scoped to bead/epic/project.

    Memories are retrieved hierarchically: bead-specific first, then
    epic-level, then project constraints.

    Args:
        bead_id: Bead ID for bead-scoped retrieval (recommended for task context).
        epic_id: Epic ID for broader scope.
        kinds: Filter by memory kind (decision, checkpoint, constraint,
               next_step, action_report, ci_note).
        limit: Maximum entries to return (default 20, max 100).
    """
    try:
        effective_limit = _effective_limit(limit)
        result = await get_scoped_memories(
            _project_client(),
            ScopedMemoryQuery(
                project_id=_project_id(),
                bead_id=bead_id,
                epic_id=epic_id,
                kinds=kinds,
                limit=effective_limit,
            ),
        )
        memories = (
            result.bead_memories + result.epic_memories + result.project_constraints
        )[:effective_limit]
        return _to_json(
            {
                "ok": True,
                "summary": {
                    "bead_memories": len(result.bead_memories),
                    "epic_memories": len(result.epic_memories),
                    "project_constraints": len(result.project_constraints),
                    "active_constraints": len(result.active_constraints),
                    "total_returned": len(memories),
                },
                "memories": [_memory_summary(m) for m in memories],
            }
        )
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})


@mcp.tool()
async def write_memory(
    kind: str,
    title: str,
    content: str,
    bead_id: Optional[str] = None,
    epic_id: Optional[str] = None,
    intent_anchors: Optional[List[str]] = None,
) -> str:
    """
    Write a memory entry to persist context across sessions.

    Use for decisions, checkpoints, constraints, handoff notes, action
    reports or CI notes. The entry is scoped to the bead when given, else
    the epic, else the whole project.

    Args:
        kind: One of decision, checkpoint, constraint, next_step,
              action_report, ci_note.
        title: Brief title describing the memory.
        content: Full content (markdown supported).
        bead_id: Bead ID for a bead-scoped entry.
        epic_id: Epic ID for an epic-scoped entry.
        intent_anchors: Intent anchor paths, e.g. ["lifecycle.execute"].
    """
    parsed_kind = parse_kind(kind)
    if parsed_kind is None:
        return _to_json(
            {
                "ok": False,
                "error": f"Invalid kind: {kind}. Must be one of: {', '.join(MEMORY_KINDS)}",
            }
        )
    for name, value in (("title", title), ("content", content)):
        if not isinstance(value, str) or not value.strip():
            return _to_json({"ok": False, "error": f"Missing required field: {name}"})

    try:
        client = _project_client()
        await client.ensure_initialized()
        expires_at = None
        if APPLY_DEFAULT_RETENTION:
            expires_at = default_expiry(
                parsed_kind, datetime.now(timezone.utc).replace(tzinfo=None)
            )
        entry = await client.create_memory_entry(
            CreateMemoryEntry(
                project_id=_project_id(),
                kind=parsed_kind,
                title=title,
                content=content,
                bead_id=bead_id,
                epic_id=epic_id,
                intent_anchors=intent_anchors,
                expires_at=expires_at,
            )
        )
        return _to_json(
            {
                "ok": True,
                "id": entry.id,
                "message": f"Memory entry created with ID: {entry.id}",
                "scope": _scope_label(bead_id, epic_id),
            }
        )
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})


@mcp.tool()
async def search_memory(
    query: str,
    bead_id: Optional[str] = None,
    kinds: Optional[List[str]] = None,
    limit: int = 20,
) -> str:
    """
    Search memories by text with relevance ranking.

    Args:
        query: Text matched against titles and content.
        bead_id: Limit search to memories scoped to this bead.
        kinds: Filter by memory kind.
        limit: Maximum results (default 20, max 100).
    """
    if not isinstance(query, str) or not query.strip():
        return _to_json({"ok": False, "error": "Missing required field: query"})

    try:
        effective_limit = _effective_limit(limit)
        results = await search_memories(
            _project_client(),
            MemorySearchQuery(
                project_id=_project_id(),
                search_text=query,
                bead_id=bead_id,
                kinds=kinds,
                limit=effective_limit,
            ),
        )
        ranked = rank_memories(results, MemoryRankingContext(bead_id=bead_id))
        payload_results = []
        for memory in ranked[:effective_limit]:
            item = _memory_summary(memory)
            item.pop("intent_anchors")
            item["relevance_score"] = round(memory.computed_score, 4)
            payload_results.append(item)
        return _to_json(
            {
                "ok": True,
                "query": query,
                "count": len(ranked),
                "results": payload_results,
            }
        )
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})


@mcp.tool()
async def memory_brief(
    bead_id: Optional[str] = None,
    epic_id: Optional[str] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """
    Build a token-budgeted memory brief for the current working scope.

    Constraints are packed first, then the remaining memories by relevance.

    Args:
        bead_id: Current bead.
        epic_id: Epic the bead belongs to.
        max_tokens: Token budget (default 2000).
    """
    try:
        _, brief = await build_scoped_brief(
            _project_client(),
            ScopedMemoryQuery(project_id=_project_id(), bead_id=bead_id, epic_id=epic_id),
            MemoryBriefOptions(max_tokens=max_tokens or BRIEF_MAX_TOKENS),
        )
        return _to_json({"ok": True, **brief.to_dict()})
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the project database on startup."""
    client = _project_client()
    await client.init_db()
    print("Beads Memory MCP server running", file=sys.stderr)
    print(f"  Project: {os.getenv('MEMORY_PROJECT_ID')}", file=sys.stderr)
    print(f"  Database: {client.database_url}", file=sys.stderr)


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
