"""
Token-budgeted memory briefs for agent context injection.

Strategy:
1. Constraints first (when prioritized), each included only if it fits
2. Remaining entries in the order given (callers rank beforehand)
3. Entries that do not fit are counted and skipped, never revisited
"""

import math
from datetime import datetime
from typing import Iterable, List, Optional

from .types import (
    DEFAULT_MEMORY_BRIEF_TOKENS,
    TOKENS_PER_CHAR,
    MemoryBrief,
    MemoryBriefOptions,
    MemoryEntry,
    MemoryKind,
    RankedMemory,
)

BRIEF_HEADER = "## Memory Context\n"


def estimate_tokens(text: str) -> int:
    """Conservative estimate of ~4 characters per token."""
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def format_date(value: datetime) -> str:
    """Short month/day/year date, e.g. 3/7/2026."""
    return f"{value.month}/{value.day}/{value.year}"


def scope_tag(memory: MemoryEntry) -> str:
    if memory.bead_id:
        return f"[bead:{memory.bead_id}]"
    if memory.epic_id:
        return f"[epic:{memory.epic_id}]"
    return "[project]"


def format_memory_entry(memory: MemoryEntry, include_score: bool = False) -> str:
    kind = memory.kind.value if isinstance(memory.kind, MemoryKind) else memory.kind
    entry = (
        f"### {memory.title} {scope_tag(memory)}\n"
        f"**{kind}** - {format_date(memory.created_at)}\n"
        f"{memory.content}\n"
    )
    if include_score and isinstance(memory, RankedMemory):
        entry += f"_Score: {memory.computed_score:.2f}_\n"
    return entry


def build_memory_brief(
    memories: Iterable[MemoryEntry],
    options: Optional[MemoryBriefOptions] = None,
) -> MemoryBrief:
    """
    Pack memories into a brief that respects the token budget.

    The omission footer is appended after packing and its tokens are added on
    top, so token_estimate may exceed max_tokens by the footer's size when
    entries were truncated.
    """
    options = options or MemoryBriefOptions()
    max_tokens = (
        options.max_tokens if options.max_tokens is not None else DEFAULT_MEMORY_BRIEF_TOKENS
    )

    lines: List[str] = [BRIEF_HEADER]
    token_count = estimate_tokens(BRIEF_HEADER)
    included_count = 0
    truncated_count = 0

    memories = list(memories)
    if options.prioritize_constraints:
        constraints = [m for m in memories if m.kind == MemoryKind.CONSTRAINT]
        others = [m for m in memories if m.kind != MemoryKind.CONSTRAINT]
    else:
        constraints = []
        others = memories

    for memory in constraints + others:
        entry = format_memory_entry(memory, options.include_score_breakdown)
        entry_tokens = estimate_tokens(entry)
        if token_count + entry_tokens <= max_tokens:
            lines.append(entry)
            token_count += entry_tokens
            included_count += 1
        else:
            truncated_count += 1

    if truncated_count > 0:
        footer = f"\n_{truncated_count} additional memories omitted for brevity._"
        lines.append(footer)
        token_count += estimate_tokens(footer)

    return MemoryBrief(
        text="\n".join(lines),
        token_estimate=math.ceil(token_count),
        included_count=included_count,
        truncated_count=truncated_count,
    )
