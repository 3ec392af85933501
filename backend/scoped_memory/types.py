"""
Types and constants for scoped memory retrieval.

Memory entries are append-only records (decisions, checkpoints, constraints,
handoff notes) attached to a project and optionally narrowed to an epic
and/or a bead. Scoping hierarchy: bead -> epic -> project.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# Memory Kinds
# =============================================================================


class MemoryKind(str, Enum):
    """Kinds of memory entries.

    - decision: architectural or implementation decision with rationale
    - checkpoint: session state snapshot for continuity
    - constraint: hard rule that must always be followed
    - next_step: handoff note for the next session/agent
    - action_report: quick action execution result
    - ci_note: CI/CD related note
    """

    DECISION = "decision"
    CHECKPOINT = "checkpoint"
    CONSTRAINT = "constraint"
    NEXT_STEP = "next_step"
    ACTION_REPORT = "action_report"
    CI_NOTE = "ci_note"


MEMORY_KINDS: List[str] = [kind.value for kind in MemoryKind]


def parse_kind(value: Any) -> Optional[MemoryKind]:
    """Return the MemoryKind for a raw value, or None if it is not a valid kind."""
    if isinstance(value, MemoryKind):
        return value
    try:
        return MemoryKind(str(value).strip())
    except ValueError:
        return None


# =============================================================================
# Constants
# =============================================================================

DEFAULT_RELEVANCE_SCORE = 1.0
MIN_RELEVANCE_SCORE = 0.0
MAX_RELEVANCE_SCORE = 1.0

DEFAULT_MEMORY_BRIEF_TOKENS = 2000
TOKENS_PER_CHAR = 0.25

DEFAULT_MEMORY_LIMIT = 50
MAX_MEMORY_LIMIT = 100

RECENCY_DECAY_DAYS = 30
SOFT_DELETE_RETENTION_DAYS = 30

# None = never expires
DEFAULT_RETENTION_DAYS: Dict[MemoryKind, Optional[int]] = {
    MemoryKind.CONSTRAINT: None,
    MemoryKind.DECISION: 90,
    MemoryKind.CHECKPOINT: 30,
    MemoryKind.NEXT_STEP: 7,
    MemoryKind.ACTION_REPORT: 14,
    MemoryKind.CI_NOTE: 30,
}


def default_expiry(kind: MemoryKind, now: datetime) -> Optional[datetime]:
    """Expiry timestamp for a new entry of `kind` under the default retention."""
    days = DEFAULT_RETENTION_DAYS.get(MemoryKind(kind))
    if days is None:
        return None
    return now + timedelta(days=days)


# =============================================================================
# Entries
# =============================================================================


@dataclass
class MemoryEntry:
    """A stored memory entry.

    Both bead_id and epic_id empty means the entry is project-scoped.
    deleted_at set means soft-deleted; expires_at None means it never expires.
    Timestamps are naive UTC datetimes.
    """

    id: str
    project_id: str
    kind: MemoryKind
    title: str
    content: str
    created_at: datetime
    bead_id: Optional[str] = None
    epic_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_id: Optional[str] = None
    agent_name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    intent_anchors: Optional[List[str]] = None
    relevance_score: float = DEFAULT_RELEVANCE_SCORE
    expires_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def scope_label(self) -> str:
        if self.bead_id:
            return f"bead:{self.bead_id}"
        if self.epic_id:
            return f"epic:{self.epic_id}"
        return "project"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, ScoreBreakdown):
                value = value.to_dict()
            payload[item.name] = value
        return payload


@dataclass
class CreateMemoryEntry:
    """Payload for creating a memory entry."""

    project_id: str
    kind: MemoryKind
    title: str
    content: str
    bead_id: Optional[str] = None
    epic_id: Optional[str] = None
    session_id: Optional[str] = None
    chat_id: Optional[str] = None
    agent_name: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    intent_anchors: Optional[List[str]] = None
    relevance_score: Optional[float] = None
    expires_at: Optional[datetime] = None


# =============================================================================
# Queries
# =============================================================================


@dataclass
class ScopedMemoryQuery:
    project_id: str
    bead_id: Optional[str] = None
    epic_id: Optional[str] = None
    kinds: Optional[List[MemoryKind]] = None
    limit: Optional[int] = None
    include_expired: bool = False


@dataclass
class ScopedMemoryResult:
    bead_memories: List[MemoryEntry] = field(default_factory=list)
    epic_memories: List[MemoryEntry] = field(default_factory=list)
    project_constraints: List[MemoryEntry] = field(default_factory=list)
    active_constraints: List[MemoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bead_memories": [m.to_dict() for m in self.bead_memories],
            "epic_memories": [m.to_dict() for m in self.epic_memories],
            "project_constraints": [m.to_dict() for m in self.project_constraints],
            "active_constraints": [m.to_dict() for m in self.active_constraints],
        }


@dataclass
class MemorySearchQuery:
    project_id: str
    search_text: str
    bead_id: Optional[str] = None
    kinds: Optional[List[MemoryKind]] = None
    limit: Optional[int] = None


@dataclass
class ListMemoryOptions:
    project_id: str
    bead_id: Optional[str] = None
    epic_id: Optional[str] = None
    kinds: Optional[List[MemoryKind]] = None
    limit: Optional[int] = None
    include_deleted: bool = False
    include_expired: bool = False


# =============================================================================
# Ranking
# =============================================================================


@dataclass
class MemoryRankingContext:
    """The caller's current working scope."""

    bead_id: Optional[str] = None
    epic_id: Optional[str] = None


@dataclass
class ScoreBreakdown:
    base_relevance: float
    recency_boost: float
    scope_proximity: float
    kind_boost: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "base_relevance": self.base_relevance,
            "recency_boost": self.recency_boost,
            "scope_proximity": self.scope_proximity,
            "kind_boost": self.kind_boost,
        }


@dataclass
class RankedMemory(MemoryEntry):
    """A MemoryEntry with its computed ranking score. Never persisted."""

    computed_score: float = 0.0
    score_breakdown: Optional[ScoreBreakdown] = None


# =============================================================================
# Briefs
# =============================================================================


@dataclass
class MemoryBriefOptions:
    max_tokens: int = DEFAULT_MEMORY_BRIEF_TOKENS
    prioritize_constraints: bool = True
    include_score_breakdown: bool = False


@dataclass
class MemoryBrief:
    text: str
    token_estimate: int
    included_count: int
    truncated_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "token_estimate": self.token_estimate,
            "included_count": self.included_count,
            "truncated_count": self.truncated_count,
        }


def empty_brief() -> MemoryBrief:
    return MemoryBrief(text="", token_estimate=0, included_count=0, truncated_count=0)
