"""
Memory API - project-scoped memory entries

Routes live under /projects/{project_id}/memory. Every route accepts an
optional project_path query parameter that selects the per-project
database at <project_path>/.beads/memory.db; without it the default
DATABASE_URL store is used.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from db import get_sqlite_client
from scoped_memory import (
    CreateMemoryEntry,
    ListMemoryOptions,
    MemoryBriefOptions,
    MemoryKind,
    MemoryNotFoundError,
    MemoryRankingContext,
    MemorySearchQuery,
    MemoryStoreError,
    MemoryValidationError,
    ScopedMemoryQuery,
    build_scoped_brief,
    get_action_stats,
    get_active_constraints,
    get_recent_action_reports,
    rank_memories,
    search_memories,
)
from scoped_memory.actions import DEFAULT_ACTION_REPORT_LIMIT
from scoped_memory.errors import ENTRY_NOT_FOUND, INVALID_ENTRY, MISSING_PATH
from scoped_memory.types import (
    DEFAULT_MEMORY_BRIEF_TOKENS,
    DEFAULT_MEMORY_LIMIT,
    MAX_MEMORY_LIMIT,
    default_expiry,
    parse_kind,
)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


BRIEF_MAX_TOKENS = _env_int("MEMORY_BRIEF_MAX_TOKENS", DEFAULT_MEMORY_BRIEF_TOKENS, minimum=1)
LIST_DEFAULT_LIMIT = _env_int("MEMORY_DEFAULT_LIMIT", DEFAULT_MEMORY_LIMIT, minimum=1)
LIST_MAX_LIMIT = _env_int("MEMORY_MAX_LIMIT", MAX_MEMORY_LIMIT, minimum=1)

_STATUS_BY_CODE = {
    INVALID_ENTRY: status.HTTP_400_BAD_REQUEST,
    MISSING_PATH: status.HTTP_400_BAD_REQUEST,
    ENTRY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
}

router = APIRouter(prefix="/projects/{project_id}/memory", tags=["memory"])


class MemoryCreate(BaseModel):
    kind: str
    title: str
    content: str
    bead_id: Optional[str] = None
    epic_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_id: Optional[str] = None
    agent_name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    intent_anchors: Optional[List[str]] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    expires_at: Optional[datetime] = None
    use_default_retention: bool = False


def _http_error(exc: MemoryStoreError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=exc.to_dict(),
    )


def _resolve_client(project_path: Optional[str]):
    try:
        return get_sqlite_client(project_path)
    except MemoryStoreError as exc:
        raise _http_error(exc)


def _parse_kinds(raw: Optional[str]) -> Optional[List[MemoryKind]]:
    """Comma-separated kinds; unknown names are dropped."""
    if not raw:
        return None
    kinds = [parse_kind(item) for item in raw.split(",") if item.strip()]
    kinds = [kind for kind in kinds if kind is not None]
    return kinds or None


def _clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return min(LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT)
    return max(1, min(limit, LIST_MAX_LIMIT))


@router.get("")
async def list_memories(
    project_id: str,
    project_path: Optional[str] = Query(None),
    bead_id: Optional[str] = Query(None),
    epic_id: Optional[str] = Query(None),
    kinds: Optional[str] = Query(None, description="Comma-separated memory kinds"),
    include_expired: bool = Query(False),
    limit: Optional[int] = Query(None),
):
    """List active entries, most relevant first. has_more is computed from one extra row."""
    client = _resolve_client(project_path)
    limit = _clamp_limit(limit)
    if not client.database_exists():
        return {"memories": [], "pagination": {"limit": limit, "has_more": False}}

    try:
        rows = await client.list_memory_entries(
            ListMemoryOptions(
                project_id=project_id,
                bead_id=bead_id,
                epic_id=epic_id,
                kinds=_parse_kinds(kinds),
                limit=limit + 1,
                include_expired=include_expired,
            )
        )
    except MemoryStoreError as exc:
        raise _http_error(exc)

    return {
        "memories": [m.to_dict() for m in rows[:limit]],
        "pagination": {"limit": limit, "has_more": len(rows) > limit},
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_memory(
    project_id: str,
    body: MemoryCreate,
    project_path: Optional[str] = Query(None),
):
    client = _resolve_client(project_path)
    fields = body.model_dump(exclude={"use_default_retention"})
    fields["title"] = body.title.strip()
    fields["content"] = body.content.strip()
    kind = parse_kind(body.kind)
    if body.use_default_retention and fields["expires_at"] is None and kind is not None:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        fields["expires_at"] = default_expiry(kind, now)
    try:
        await client.ensure_initialized()
        entry = await client.create_memory_entry(
            CreateMemoryEntry(project_id=project_id, **fields)
        )
    except MemoryStoreError as exc:
        raise _http_error(exc)
    return {"id": entry.id, "created_at": entry.created_at.isoformat()}


@router.get("/scoped")
async def get_scoped(
    project_id: str,
    project_path: Optional[str] = Query(None),
    bead_id: Optional[str] = Query(None),
    epic_id: Optional[str] = Query(None),
    max_tokens: Optional[int] = Query(None, ge=1),
):
    """
    Hierarchical memories for a bead plus a token-budgeted brief.

    Returns bead_memories, epic_memories, project_constraints,
    active_constraints and brief.
    """
    if not bead_id:
        raise _http_error(MemoryValidationError("bead_id required for scoped retrieval"))

    client = _resolve_client(project_path)
    try:
        result, brief = await build_scoped_brief(
            client,
            ScopedMemoryQuery(project_id=project_id, bead_id=bead_id, epic_id=epic_id),
            MemoryBriefOptions(max_tokens=max_tokens or BRIEF_MAX_TOKENS),
        )
    except MemoryStoreError as exc:
        raise _http_error(exc)

    payload = result.to_dict()
    payload["brief"] = brief.to_dict()
    return payload


@router.get("/search")
async def search(
    project_id: str,
    q: Optional[str] = Query(None),
    project_path: Optional[str] = Query(None),
    bead_id: Optional[str] = Query(None),
    kinds: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
):
    """Substring search over title and content, ranked for the given bead."""
    client = _resolve_client(project_path)
    try:
        results = await search_memories(
            client,
            MemorySearchQuery(
                project_id=project_id,
                search_text=q or "",
                bead_id=bead_id,
                kinds=_parse_kinds(kinds),
                limit=_clamp_limit(limit),
            ),
        )
    except MemoryStoreError as exc:
        raise _http_error(exc)

    ranked = rank_memories(results, MemoryRankingContext(bead_id=bead_id))
    return {"query": q, "results": [m.to_dict() for m in ranked]}


@router.get("/constraints")
async def list_constraints(project_id: str, project_path: Optional[str] = Query(None)):
    client = _resolve_client(project_path)
    try:
        constraints = await get_active_constraints(client, project_id)
    except MemoryStoreError as exc:
        raise _http_error(exc)
    return {"constraints": [m.to_dict() for m in constraints]}


@router.get("/actions")
async def list_action_reports(
    project_id: str,
    project_path: Optional[str] = Query(None),
    bead_id: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
):
    """Recent action reports plus success/failure stats for the same filters."""
    client = _resolve_client(project_path)
    try:
        reports = await get_recent_action_reports(
            client,
            project_id,
            bead_id=bead_id,
            session_id=session_id,
            limit=_clamp_limit(limit) if limit is not None else DEFAULT_ACTION_REPORT_LIMIT,
        )
        stats = await get_action_stats(client, project_id, bead_id=bead_id, session_id=session_id)
    except MemoryStoreError as exc:
        raise _http_error(exc)
    return {"actions": [m.to_dict() for m in reports], "stats": stats}


@router.get("/{mem_id}")
async def get_memory(
    project_id: str,
    mem_id: str,
    project_path: Optional[str] = Query(None),
):
    client = _resolve_client(project_path)
    entry = None
    if client.database_exists():
        entry = await client.get_memory_entry(mem_id)
    if entry is None or entry.deleted_at is not None or entry.project_id != project_id:
        raise _http_error(MemoryNotFoundError(mem_id))
    return entry.to_dict()


@router.delete("/{mem_id}")
async def delete_memory(
    project_id: str,
    mem_id: str,
    project_path: Optional[str] = Query(None),
):
    """Soft delete. The row stays until a maintenance purge."""
    client = _resolve_client(project_path)
    deleted_at = None
    if client.database_exists():
        entry = await client.get_memory_entry(mem_id)
        if entry is not None and entry.project_id == project_id:
            deleted_at = await client.soft_delete_memory_entry(mem_id)
    if deleted_at is None:
        raise _http_error(MemoryNotFoundError(mem_id))
    return {"success": True, "deleted_at": deleted_at.isoformat()}
