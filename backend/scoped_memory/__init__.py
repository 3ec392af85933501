"""Scoped memory retrieval: tier resolution, relevance ranking and briefs."""

from .actions import get_action_report, get_action_stats, get_recent_action_reports
from .brief import build_memory_brief, estimate_tokens, format_memory_entry
from .context import brief_candidates, build_scoped_brief
from .errors import (
    MemoryCreateError,
    MemoryNotFoundError,
    MemoryQueryError,
    MemoryStoreError,
    MemoryValidationError,
    MissingStoreError,
)
from .query import MemoryQuery, MemoryStorePort, QueryBuilder
from .ranking import calculate_relevance_score, rank_memories
from .retrieval import get_active_constraints, get_scoped_memories, search_memories
from .types import (
    CreateMemoryEntry,
    ListMemoryOptions,
    MemoryBrief,
    MemoryBriefOptions,
    MemoryEntry,
    MemoryKind,
    MemoryRankingContext,
    MemorySearchQuery,
    RankedMemory,
    ScopedMemoryQuery,
    ScopedMemoryResult,
)

__all__ = [
    "CreateMemoryEntry",
    "ListMemoryOptions",
    "MemoryBrief",
    "MemoryBriefOptions",
    "MemoryCreateError",
    "MemoryEntry",
    "MemoryKind",
    "MemoryNotFoundError",
    "MemoryQuery",
    "MemoryQueryError",
    "MemoryRankingContext",
    "MemorySearchQuery",
    "MemoryStoreError",
    "MemoryStorePort",
    "MemoryValidationError",
    "MissingStoreError",
    "QueryBuilder",
    "RankedMemory",
    "ScopedMemoryQuery",
    "ScopedMemoryResult",
    "brief_candidates",
    "build_memory_brief",
    "build_scoped_brief",
    "calculate_relevance_score",
    "estimate_tokens",
    "format_memory_entry",
    "get_action_report",
    "get_action_stats",
    "get_active_constraints",
    "get_scoped_memories",
    "get_recent_action_reports",
    "rank_memories",
    "search_memories",
]
