"""
Relevance ranking for memory entries.

Scoring factors:
- Base relevance (stored relevance_score): weight 0.4
- Recency boost (linear decay over RECENCY_DECAY_DAYS): weight 0.3
- Scope proximity (bead > epic > project): weight 0.2
- Kind boost (constraint > decision > checkpoint > others): weight 0.1
"""

from dataclasses import fields
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .types import (
    RECENCY_DECAY_DAYS,
    MemoryEntry,
    MemoryKind,
    MemoryRankingContext,
    RankedMemory,
    ScoreBreakdown,
)

WEIGHT_BASE_RELEVANCE = 0.4
WEIGHT_RECENCY = 0.3
WEIGHT_SCOPE_PROXIMITY = 0.2
WEIGHT_KIND = 0.1

SCOPE_PROXIMITY_BEAD = 1.0
SCOPE_PROXIMITY_EPIC = 0.7
SCOPE_PROXIMITY_PROJECT = 0.3

KIND_BOOSTS = {
    MemoryKind.CONSTRAINT: 0.3,
    MemoryKind.DECISION: 0.2,
    MemoryKind.CHECKPOINT: 0.1,
}

_SECONDS_PER_DAY = 24 * 60 * 60


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_since(created_at: datetime, now: Optional[datetime] = None) -> float:
    """Fractional days elapsed between created_at and now."""
    reference = _as_naive_utc(now) if now else datetime.now(timezone.utc).replace(tzinfo=None)
    age = reference - _as_naive_utc(created_at)
    return age.total_seconds() / _SECONDS_PER_DAY


def calculate_relevance_score(
    entry: MemoryEntry,
    context: MemoryRankingContext,
    now: Optional[datetime] = None,
) -> Tuple[float, ScoreBreakdown]:
    """Return (computed_score, breakdown) for an entry in the given context."""
    base_relevance = entry.relevance_score

    recency_boost = max(0.0, 1 - days_since(entry.created_at, now) / RECENCY_DECAY_DAYS)

    # Bead and epic matches are exclusive, checked in that order.
    scope_proximity = SCOPE_PROXIMITY_PROJECT
    if context.bead_id and entry.bead_id == context.bead_id:
        scope_proximity = SCOPE_PROXIMITY_BEAD
    elif context.epic_id and entry.epic_id == context.epic_id:
        scope_proximity = SCOPE_PROXIMITY_EPIC

    kind_boost = KIND_BOOSTS.get(entry.kind, 0.0)

    computed_score = (
        base_relevance * WEIGHT_BASE_RELEVANCE
        + recency_boost * WEIGHT_RECENCY
        + scope_proximity * WEIGHT_SCOPE_PROXIMITY
        + kind_boost * WEIGHT_KIND
    )
    breakdown = ScoreBreakdown(
        base_relevance=base_relevance,
        recency_boost=recency_boost,
        scope_proximity=scope_proximity,
        kind_boost=kind_boost,
    )
    return computed_score, breakdown


def to_ranked(
    entry: MemoryEntry, computed_score: float, breakdown: ScoreBreakdown
) -> RankedMemory:
    values = {f.name: getattr(entry, f.name) for f in fields(MemoryEntry)}
    return RankedMemory(**values, computed_score=computed_score, score_breakdown=breakdown)


def rank_memories(
    memories: Iterable[MemoryEntry],
    context: Optional[MemoryRankingContext] = None,
    now: Optional[datetime] = None,
) -> List[RankedMemory]:
    """Score every entry and sort by computed score, highest first."""
    context = context or MemoryRankingContext()
    ranked = [
        to_ranked(memory, *calculate_relevance_score(memory, context, now))
        for memory in memories
    ]
    ranked.sort(key=lambda m: m.computed_score, reverse=True)
    return ranked
