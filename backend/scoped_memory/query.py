"""
Structured queries against the memory store.

Retrieval tiers are assembled as lists of (field, op, value) predicates so
that each predicate carries its own parameter. Storage adapters compile a
MemoryQuery into their native form (see db.sqlite_client).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Protocol, Sequence, Tuple, Union

from .types import MemoryEntry, MemoryKind

QUERYABLE_FIELDS = frozenset(
    {
        "id",
        "project_id",
        "bead_id",
        "epic_id",
        "session_id",
        "chat_id",
        "agent_name",
        "kind",
        "title",
        "content",
        "relevance_score",
        "expires_at",
        "deleted_at",
        "created_at",
    }
)


class Op(str, Enum):
    EQ = "eq"
    IS_NULL = "is_null"
    IN = "in"
    NOT_EXPIRED = "not_expired"  # expires_at IS NULL OR expires_at > value
    CONTAINS = "contains"  # case-insensitive substring over any of the fields


@dataclass(frozen=True)
class Predicate:
    fields: Tuple[str, ...]
    op: Op
    value: Any = None

    @property
    def field(self) -> str:
        return self.fields[0]


@dataclass(frozen=True)
class OrderKey:
    field: str
    descending: bool = True


@dataclass(frozen=True)
class ScopeRankKey:
    """Orders rows bead match (1), then epic match (2), then the rest (3)."""

    bead_id: Optional[str] = None
    epic_id: Optional[str] = None


OrderTerm = Union[OrderKey, ScopeRankKey]


@dataclass(frozen=True)
class MemoryQuery:
    predicates: Tuple[Predicate, ...]
    order_by: Tuple[OrderTerm, ...] = ()
    limit: Optional[int] = None

    def find(self, field_name: str, op: Optional[Op] = None) -> List[Predicate]:
        return [
            p
            for p in self.predicates
            if field_name in p.fields and (op is None or p.op == op)
        ]


class MemoryStorePort(Protocol):
    """Read capability the retrieval core needs from a store."""

    def database_exists(self) -> bool: ...

    async def query_entries(self, query: MemoryQuery) -> List[MemoryEntry]: ...


def _check_field(name: str) -> str:
    if name not in QUERYABLE_FIELDS:
        raise ValueError(f"Unknown memory field: {name}")
    return name


class QueryBuilder:
    """Fluent builder for MemoryQuery.

    Example:
        >>> query = (
        ...     QueryBuilder("proj-1")
        ...     .active()
        ...     .not_expired(now)
        ...     .eq("bead_id", "bd-12")
        ...     .order_by_relevance()
        ...     .limit(50)
        ...     .build()
        ... )
    """

    def __init__(self, project_id: str):
        self._predicates: List[Predicate] = [
            Predicate(("project_id",), Op.EQ, project_id)
        ]
        self._order_by: List[OrderTerm] = []
        self._limit: Optional[int] = None

    def eq(self, name: str, value: Any) -> "QueryBuilder":
        self._predicates.append(Predicate((_check_field(name),), Op.EQ, value))
        return self

    def is_null(self, name: str) -> "QueryBuilder":
        self._predicates.append(Predicate((_check_field(name),), Op.IS_NULL))
        return self

    def one_of(self, name: str, values: Sequence[Any]) -> "QueryBuilder":
        self._predicates.append(
            Predicate((_check_field(name),), Op.IN, tuple(values))
        )
        return self

    def kinds(self, kinds: Optional[Sequence[MemoryKind]]) -> "QueryBuilder":
        """Restrict to the given kinds. Empty or None adds no predicate."""
        if kinds:
            self.one_of("kind", [MemoryKind(k).value for k in kinds])
        return self

    def active(self) -> "QueryBuilder":
        """Exclude soft-deleted entries."""
        return self.is_null("deleted_at")

    def not_expired(self, now: datetime) -> "QueryBuilder":
        self._predicates.append(Predicate(("expires_at",), Op.NOT_EXPIRED, now))
        return self

    def contains(self, names: Sequence[str], text: str) -> "QueryBuilder":
        checked = tuple(_check_field(n) for n in names)
        self._predicates.append(Predicate(checked, Op.CONTAINS, text))
        return self

    def order_by(self, name: str, descending: bool = True) -> "QueryBuilder":
        self._order_by.append(OrderKey(_check_field(name), descending))
        return self

    def order_by_relevance(self) -> "QueryBuilder":
        """relevance_score DESC, created_at DESC."""
        return self.order_by("relevance_score").order_by("created_at")

    def order_by_scope(
        self, bead_id: Optional[str], epic_id: Optional[str]
    ) -> "QueryBuilder":
        self._order_by.append(ScopeRankKey(bead_id or None, epic_id or None))
        return self

    def limit(self, limit: Optional[int]) -> "QueryBuilder":
        self._limit = limit
        return self

    def build(self) -> MemoryQuery:
        return MemoryQuery(
            predicates=tuple(self._predicates),
            order_by=tuple(self._order_by),
            limit=self._limit,
        )
