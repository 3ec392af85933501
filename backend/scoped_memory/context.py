"""Scoped retrieval, ranking and brief assembly for one working scope."""

from datetime import datetime
from typing import List, Optional, Tuple

from .brief import build_memory_brief
from .query import MemoryStorePort
from .ranking import rank_memories
from .retrieval import _store_ready, get_scoped_memories
from .types import (
    MemoryBrief,
    MemoryBriefOptions,
    MemoryEntry,
    MemoryRankingContext,
    ScopedMemoryQuery,
    ScopedMemoryResult,
    empty_brief,
)


def brief_candidates(result: ScopedMemoryResult) -> List[MemoryEntry]:
    """Bead, epic and active-constraint entries, first occurrence of each id kept."""
    seen = set()
    candidates: List[MemoryEntry] = []
    for memory in result.bead_memories + result.epic_memories + result.active_constraints:
        if memory.id in seen:
            continue
        seen.add(memory.id)
        candidates.append(memory)
    return candidates


async def build_scoped_brief(
    store: Optional[MemoryStorePort],
    query: ScopedMemoryQuery,
    options: Optional[MemoryBriefOptions] = None,
    now: Optional[datetime] = None,
) -> Tuple[ScopedMemoryResult, MemoryBrief]:
    """
    Resolve the scope tiers, rank the candidates against the query's bead and
    epic, and pack them into a brief.

    Project constraints are covered by the active-constraint tier, so they are
    not added to the candidates a second time.

    Without a backing store the brief is empty, header included.
    """
    result = await get_scoped_memories(store, query, now=now)
    if not _store_ready(store):
        return result, empty_brief()
    ranked = rank_memories(
        brief_candidates(result),
        MemoryRankingContext(bead_id=query.bead_id, epic_id=query.epic_id),
        now=now,
    )
    return result, build_memory_brief(ranked, options)
