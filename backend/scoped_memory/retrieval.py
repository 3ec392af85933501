"""
Scoped memory retrieval.

Scoping rules:
1. Bead-scoped: entries where bead_id = X
2. Epic-scoped: entries where epic_id = Y AND bead_id IS NULL
3. Project-scoped: only constraints where bead_id IS NULL AND epic_id IS NULL
4. Active constraints: non-expired constraints from any scope

Project-wide entries that are not constraints are left out of every tier so
that unscoped notes do not flood each retrieval; they are reachable only
through search_memories().
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .errors import MemoryValidationError
from .query import MemoryQuery, MemoryStorePort, QueryBuilder
from .types import (
    DEFAULT_MEMORY_LIMIT,
    MemoryEntry,
    MemoryKind,
    MemorySearchQuery,
    ScopedMemoryQuery,
    ScopedMemoryResult,
    parse_kind,
)


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _require_project_id(project_id: Optional[str]) -> str:
    if not isinstance(project_id, str) or not project_id.strip():
        raise MemoryValidationError(
            "project_id is required", details={"project_id": project_id}
        )
    return project_id


def _normalize_kinds(kinds: Optional[Sequence[object]]) -> Optional[List[MemoryKind]]:
    if not kinds:
        return None
    normalized: List[MemoryKind] = []
    for raw in kinds:
        kind = parse_kind(raw)
        if kind is None:
            raise MemoryValidationError(
                f"Invalid memory kind: {raw}", details={"kind": str(raw)}
            )
        normalized.append(kind)
    return normalized


def _normalize_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_MEMORY_LIMIT
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise MemoryValidationError(
            "limit must be a positive integer", details={"limit": limit}
        )
    return limit


def _store_ready(store: Optional[MemoryStorePort]) -> bool:
    return store is not None and store.database_exists()


# =============================================================================
# Tier queries
# =============================================================================


def _scoped_base(
    query: ScopedMemoryQuery, now: datetime
) -> QueryBuilder:
    builder = QueryBuilder(query.project_id).active()
    if not query.include_expired:
        builder.not_expired(now)
    return builder


def build_bead_query(
    query: ScopedMemoryQuery, now: datetime, limit: int
) -> MemoryQuery:
    return (
        _scoped_base(query, now)
        .eq("bead_id", query.bead_id)
        .kinds(query.kinds)
        .order_by_relevance()
        .limit(limit)
        .build()
    )


def build_epic_query(
    query: ScopedMemoryQuery, now: datetime, limit: int
) -> MemoryQuery:
    # Bead-specific entries come back through the bead tier only.
    return (
        _scoped_base(query, now)
        .eq("epic_id", query.epic_id)
        .is_null("bead_id")
        .kinds(query.kinds)
        .order_by_relevance()
        .limit(limit)
        .build()
    )


def build_project_constraints_query(
    query: ScopedMemoryQuery, now: datetime, limit: int
) -> MemoryQuery:
    return (
        _scoped_base(query, now)
        .is_null("bead_id")
        .is_null("epic_id")
        .eq("kind", MemoryKind.CONSTRAINT.value)
        .order_by_relevance()
        .limit(limit)
        .build()
    )


def build_active_constraints_query(
    query: ScopedMemoryQuery, now: datetime, limit: int
) -> MemoryQuery:
    # Always expiry-filtered, whatever include_expired says.
    return (
        QueryBuilder(query.project_id)
        .eq("kind", MemoryKind.CONSTRAINT.value)
        .active()
        .not_expired(now)
        .order_by_scope(query.bead_id, query.epic_id)
        .order_by("relevance_score")
        .limit(limit)
        .build()
    )


# =============================================================================
# Public operations
# =============================================================================


async def get_scoped_memories(
    store: Optional[MemoryStorePort],
    query: ScopedMemoryQuery,
    now: Optional[datetime] = None,
) -> ScopedMemoryResult:
    """
    Resolve a scoped query into the four retrieval tiers.

    Args:
        store: Memory store; None or a store without a database yields an
               empty result.
        query: Project id plus optional bead/epic scope, kind filter, limit
               and include_expired flag. The kind filter applies to the bead
               and epic tiers only.
        now: Reference time for expiry checks (naive UTC). Defaults to now.

    Returns:
        ScopedMemoryResult with bead_memories, epic_memories,
        project_constraints and active_constraints.

    Raises:
        MemoryValidationError: missing project_id, unknown kinds or bad limit.
        MemoryQueryError: the store failed to execute a tier query.
    """
    _require_project_id(query.project_id)
    limit = _normalize_limit(query.limit)
    query = ScopedMemoryQuery(
        project_id=query.project_id,
        bead_id=query.bead_id or None,
        epic_id=query.epic_id or None,
        kinds=_normalize_kinds(query.kinds),
        limit=limit,
        include_expired=bool(query.include_expired),
    )

    if not _store_ready(store):
        return ScopedMemoryResult()

    now = now or _utc_now_naive()
    result = ScopedMemoryResult()

    if query.bead_id:
        result.bead_memories = await store.query_entries(
            build_bead_query(query, now, limit)
        )

    if query.epic_id:
        result.epic_memories = await store.query_entries(
            build_epic_query(query, now, limit)
        )

    result.project_constraints = await store.query_entries(
        build_project_constraints_query(query, now, limit)
    )
    result.active_constraints = await store.query_entries(
        build_active_constraints_query(query, now, limit)
    )
    return result


async def get_active_constraints(
    store: Optional[MemoryStorePort],
    project_id: str,
    now: Optional[datetime] = None,
) -> List[MemoryEntry]:
    """All non-deleted, non-expired constraints of a project, any scope."""
    _require_project_id(project_id)
    if not _store_ready(store):
        return []

    query = (
        QueryBuilder(project_id)
        .eq("kind", MemoryKind.CONSTRAINT.value)
        .active()
        .not_expired(now or _utc_now_naive())
        .order_by_relevance()
        .build()
    )
    return await store.query_entries(query)


def build_search_query(
    query: MemorySearchQuery, now: datetime, limit: int
) -> MemoryQuery:
    builder = (
        QueryBuilder(query.project_id)
        .active()
        .not_expired(now)
        .contains(("title", "content"), query.search_text)
    )
    if query.bead_id:
        builder.eq("bead_id", query.bead_id)
    return builder.kinds(query.kinds).order_by_relevance().limit(limit).build()


async def search_memories(
    store: Optional[MemoryStorePort],
    query: MemorySearchQuery,
    now: Optional[datetime] = None,
) -> List[MemoryEntry]:
    """Substring search over title and content, ordered by stored relevance."""
    _require_project_id(query.project_id)
    if not isinstance(query.search_text, str) or not query.search_text.strip():
        raise MemoryValidationError("search text is required")
    limit = _normalize_limit(query.limit)
    query = MemorySearchQuery(
        project_id=query.project_id,
        search_text=query.search_text,
        bead_id=query.bead_id or None,
        kinds=_normalize_kinds(query.kinds),
        limit=limit,
    )

    if not _store_ready(store):
        return []

    return await store.query_entries(
        build_search_query(query, now or _utc_now_naive(), limit)
    )
