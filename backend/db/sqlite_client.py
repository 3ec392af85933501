"""
SQLite Client for the project memory store

This module implements the SQLite-backed memory entry store:
- One database per project at <project_root>/.beads/memory.db
  (or DATABASE_URL for a single shared store)
- Append-only entries, soft deletes via deleted_at
- Structured MemoryQuery execution for the retrieval core
"""

import json
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    String,
    Text,
    case,
    delete,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv, find_dotenv

from scoped_memory.errors import (
    MemoryCreateError,
    MemoryQueryError,
    MemoryValidationError,
    MissingStoreError,
)
from scoped_memory.query import (
    MemoryQuery,
    Op,
    OrderKey,
    Predicate,
    QueryBuilder,
    ScopeRankKey,
)
from scoped_memory.types import (
    DEFAULT_MEMORY_LIMIT,
    DEFAULT_RELEVANCE_SCORE,
    MAX_RELEVANCE_SCORE,
    MEMORY_KINDS,
    MIN_RELEVANCE_SCORE,
    SOFT_DELETE_RETENTION_DAYS,
    CreateMemoryEntry,
    ListMemoryOptions,
    MemoryEntry,
    MemoryKind,
    parse_kind,
)
from .migration_runner import apply_pending_migrations, extract_sqlite_file_path

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class MemoryEntryRow(Base):
    """A memory entry row. Both bead_id and epic_id NULL means project scope."""

    __tablename__ = "memory_entries"
    __table_args__ = (
        CheckConstraint(
            "kind IN ({})".format(", ".join(f"'{k}'" for k in MEMORY_KINDS)),
            name="ck_memory_entries_kind",
        ),
    )

    id = Column(String(64), primary_key=True)
    project_id = Column(String(255), nullable=False)
    bead_id = Column(String(255), nullable=True)
    epic_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)
    chat_id = Column(String(255), nullable=True)
    agent_name = Column(String(255), nullable=True)
    kind = Column(String(32), nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    data = Column(Text, nullable=True)  # JSON object
    intent_anchors = Column(Text, nullable=True)  # JSON array
    relevance_score = Column(
        Float, default=DEFAULT_RELEVANCE_SCORE, server_default=text("1.0")
    )
    expires_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now_naive)


_COLUMNS = {column.name: getattr(MemoryEntryRow, column.name) for column in MemoryEntryRow.__table__.columns}


def _decode_json(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def _row_to_entry(row: MemoryEntryRow) -> MemoryEntry:
    """Map a stored row to a MemoryEntry; NULL columns become None."""
    return MemoryEntry(
        id=row.id,
        project_id=row.project_id,
        bead_id=row.bead_id,
        epic_id=row.epic_id,
        session_id=row.session_id,
        chat_id=row.chat_id,
        agent_name=row.agent_name,
        kind=MemoryKind(row.kind),
        title=row.title,
        content=row.content,
        data=_decode_json(row.data),
        intent_anchors=_decode_json(row.intent_anchors),
        relevance_score=(
            row.relevance_score
            if row.relevance_score is not None
            else DEFAULT_RELEVANCE_SCORE
        ),
        expires_at=row.expires_at,
        deleted_at=row.deleted_at,
        created_at=row.created_at,
    )


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _compile_predicate(predicate: Predicate):
    columns = [_COLUMNS[name] for name in predicate.fields]
    column = columns[0]
    if predicate.op == Op.EQ:
        return column == predicate.value
    if predicate.op == Op.IS_NULL:
        return column.is_(None)
    if predicate.op == Op.IN:
        return column.in_(list(predicate.value))
    if predicate.op == Op.NOT_EXPIRED:
        return or_(column.is_(None), column > _as_naive_utc(predicate.value))
    if predicate.op == Op.CONTAINS:
        pattern = f"%{_escape_like_pattern(str(predicate.value))}%"
        return or_(*[c.ilike(pattern, escape="\\") for c in columns])
    raise ValueError(f"Unsupported predicate op: {predicate.op}")


def _compile_order(term):
    if isinstance(term, OrderKey):
        column = _COLUMNS[term.field]
        return column.desc() if term.descending else column.asc()
    if isinstance(term, ScopeRankKey):
        whens = []
        if term.bead_id:
            whens.append((MemoryEntryRow.bead_id == term.bead_id, 1))
        if term.epic_id:
            whens.append((MemoryEntryRow.epic_id == term.epic_id, 2))
        if not whens:
            return None
        return case(*whens, else_=3).asc()
    raise ValueError(f"Unsupported order term: {term!r}")


def compile_query(query: MemoryQuery):
    """Translate a MemoryQuery into a SQLAlchemy select over memory_entries."""
    stmt = select(MemoryEntryRow).where(
        *[_compile_predicate(p) for p in query.predicates]
    )
    order_clauses = [c for c in (_compile_order(t) for t in query.order_by) if c is not None]
    if order_clauses:
        stmt = stmt.order_by(*order_clauses)
    if query.limit is not None:
        stmt = stmt.limit(query.limit)
    return stmt


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for memory entries.

    Core operations:
    - query_entries: run a structured MemoryQuery (retrieval core port)
    - create_memory_entry / get_memory_entry / list_memory_entries
    - soft_delete_memory_entry: the only way entries leave retrieval
    - expire / purge / stats for maintenance
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///project/.beads/memory.db"
        """
        self.database_url = database_url
        self.database_file = extract_sqlite_file_path(database_url)
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._initialized = False

    def database_exists(self) -> bool:
        """Whether the backing database exists. In-memory databases exist once initialized."""
        if self.database_file is None:
            return self._initialized
        return self.database_file.exists()

    async def init_db(self):
        """Create tables if they don't exist, then apply pending migrations."""
        if self.database_file is not None:
            self.database_file.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)
        self._initialized = True

    async def ensure_initialized(self):
        if not self._initialized:
            await self.init_db()

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def query_entries(self, query: MemoryQuery) -> List[MemoryEntry]:
        """Execute a structured query. Store failures raise MemoryQueryError."""
        stmt = compile_query(query)
        try:
            async with self.session() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise MemoryQueryError(
                f"Memory query failed: {exc}",
                details={"database_url": self.database_url},
            ) from exc
        return [_row_to_entry(row) for row in rows]

    async def get_memory_entry(self, entry_id: str) -> Optional[MemoryEntry]:
        """Fetch an entry by id, soft-deleted ones included."""
        async with self.session() as session:
            row = await session.get(MemoryEntryRow, entry_id)
            return _row_to_entry(row) if row is not None else None

    async def list_memory_entries(
        self, options: ListMemoryOptions, now: Optional[datetime] = None
    ) -> List[MemoryEntry]:
        """List entries with optional bead/epic/kind filters."""
        builder = QueryBuilder(options.project_id)
        if options.bead_id:
            builder.eq("bead_id", options.bead_id)
        if options.epic_id:
            builder.eq("epic_id", options.epic_id)
        builder.kinds(options.kinds)
        if not options.include_deleted:
            builder.active()
        if not options.include_expired:
            builder.not_expired(now or _utc_now_naive())
        query = (
            builder.order_by_relevance()
            .limit(options.limit if options.limit is not None else DEFAULT_MEMORY_LIMIT)
            .build()
        )
        return await self.query_entries(query)

    async def get_memory_stats(self, project_id: str) -> Dict[str, Any]:
        """Entry counts for a project: total, active, deleted and active per kind."""
        async with self.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(MemoryEntryRow).where(
                    MemoryEntryRow.project_id == project_id
                )
            )
            deleted = await session.scalar(
                select(func.count()).select_from(MemoryEntryRow).where(
                    MemoryEntryRow.project_id == project_id,
                    MemoryEntryRow.deleted_at.is_not(None),
                )
            )
            kind_rows = await session.execute(
                select(MemoryEntryRow.kind, func.count())
                .where(
                    MemoryEntryRow.project_id == project_id,
                    MemoryEntryRow.deleted_at.is_(None),
                )
                .group_by(MemoryEntryRow.kind)
            )
            entries_by_kind = {kind: 0 for kind in MEMORY_KINDS}
            for kind, count in kind_rows.all():
                if kind in entries_by_kind:
                    entries_by_kind[kind] = int(count)

        total = int(total or 0)
        deleted = int(deleted or 0)
        return {
            "total_entries": total,
            "active_entries": total - deleted,
            "deleted_entries": deleted,
            "entries_by_kind": entries_by_kind,
        }

    # =========================================================================
    # Write Operations
    # =========================================================================

    @staticmethod
    def _validate_new_entry(entry: CreateMemoryEntry) -> MemoryKind:
        kind = parse_kind(entry.kind)
        if kind is None:
            raise MemoryValidationError(
                f"Invalid memory kind: {entry.kind}. Must be one of: {', '.join(MEMORY_KINDS)}",
                details={"kind": str(entry.kind)},
            )
        for name in ("title", "content", "project_id"):
            value = getattr(entry, name)
            if not isinstance(value, str) or not value.strip():
                raise MemoryValidationError(
                    f"{name} is required", details={name: value}
                )
        if entry.relevance_score is not None:
            _validate_relevance_score(entry.relevance_score)
        return kind

    async def create_memory_entry(
        self,
        entry: CreateMemoryEntry,
        created_at: Optional[datetime] = None,
    ) -> MemoryEntry:
        """
        Insert a new memory entry.

        Args:
            entry: Entry payload. relevance_score defaults to 1.0.
            created_at: Creation time override for imports; defaults to now.

        Returns:
            The stored MemoryEntry.

        Raises:
            MemoryValidationError: invalid kind, blank title/content/project_id
                                   or relevance score outside [0, 1].
            MemoryCreateError: the insert failed in the database.
        """
        kind = self._validate_new_entry(entry)
        row = MemoryEntryRow(
            id=str(uuid.uuid4()),
            project_id=entry.project_id,
            bead_id=entry.bead_id or None,
            epic_id=entry.epic_id or None,
            session_id=entry.session_id,
            chat_id=entry.chat_id,
            agent_name=entry.agent_name,
            kind=kind.value,
            title=entry.title,
            content=entry.content,
            data=json.dumps(entry.data, ensure_ascii=False) if entry.data is not None else None,
            intent_anchors=(
                json.dumps(entry.intent_anchors, ensure_ascii=False)
                if entry.intent_anchors is not None
                else None
            ),
            relevance_score=(
                entry.relevance_score
                if entry.relevance_score is not None
                else DEFAULT_RELEVANCE_SCORE
            ),
            expires_at=_as_naive_utc(entry.expires_at),
            created_at=_as_naive_utc(created_at) or _utc_now_naive(),
        )
        try:
            async with self.session() as session:
                session.add(row)
        except SQLAlchemyError as exc:
            raise MemoryCreateError(
                f"Failed to create memory entry: {exc}",
                details={"database_url": self.database_url},
            ) from exc
        return _row_to_entry(row)

    async def soft_delete_memory_entry(
        self, entry_id: str, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Mark an entry deleted. Returns deleted_at, or None if missing/already deleted."""
        deleted_at = _as_naive_utc(now) or _utc_now_naive()
        async with self.session() as session:
            result = await session.execute(
                update(MemoryEntryRow)
                .where(
                    MemoryEntryRow.id == entry_id,
                    MemoryEntryRow.deleted_at.is_(None),
                )
                .values(deleted_at=deleted_at)
            )
        return deleted_at if result.rowcount > 0 else None

    async def update_relevance_score(self, entry_id: str, score: float) -> bool:
        _validate_relevance_score(score)
        async with self.session() as session:
            result = await session.execute(
                update(MemoryEntryRow)
                .where(
                    MemoryEntryRow.id == entry_id,
                    MemoryEntryRow.deleted_at.is_(None),
                )
                .values(relevance_score=float(score))
            )
        return result.rowcount > 0

    # =========================================================================
    # Cleanup Operations (admin only)
    # =========================================================================

    async def expire_old_entries(self, now: Optional[datetime] = None) -> int:
        """Soft-delete entries whose expires_at has passed. Returns the count."""
        now = _as_naive_utc(now) or _utc_now_naive()
        async with self.session() as session:
            result = await session.execute(
                update(MemoryEntryRow)
                .where(
                    MemoryEntryRow.expires_at.is_not(None),
                    MemoryEntryRow.expires_at < now,
                    MemoryEntryRow.deleted_at.is_(None),
                )
                .values(deleted_at=now)
            )
        return result.rowcount

    async def purge_deleted_entries(
        self,
        older_than_days: float = SOFT_DELETE_RETENTION_DAYS,
        now: Optional[datetime] = None,
    ) -> int:
        """Permanently remove rows soft-deleted more than older_than_days ago."""
        cutoff = (_as_naive_utc(now) or _utc_now_naive()) - timedelta(days=older_than_days)
        async with self.session() as session:
            result = await session.execute(
                delete(MemoryEntryRow).where(
                    MemoryEntryRow.deleted_at.is_not(None),
                    MemoryEntryRow.deleted_at < cutoff,
                )
            )
        return result.rowcount


def _validate_relevance_score(score: Any) -> None:
    if (
        isinstance(score, bool)
        or not isinstance(score, (int, float))
        or not MIN_RELEVANCE_SCORE <= score <= MAX_RELEVANCE_SCORE
    ):
        raise MemoryValidationError(
            "Relevance score must be between 0 and 1", details={"relevance_score": score}
        )


# =============================================================================
# Client Registry
# =============================================================================

_sqlite_clients: Dict[str, SQLiteClient] = {}


def memory_database_url(project_path: str) -> str:
    """SQLAlchemy URL of a project's memory database (.beads/memory.db)."""
    db_path = Path(project_path).expanduser().resolve() / ".beads" / "memory.db"
    return f"sqlite+aiosqlite:///{db_path}"


def get_sqlite_client(project_path: Optional[str] = None) -> SQLiteClient:
    """Get the cached SQLiteClient for a project path, or for DATABASE_URL."""
    if project_path:
        database_url = memory_database_url(project_path)
    else:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise MissingStoreError(
                "DATABASE_URL environment variable is not set and no project_path was given."
            )
    client = _sqlite_clients.get(database_url)
    if client is None:
        client = SQLiteClient(database_url)
        _sqlite_clients[database_url] = client
    return client


async def close_sqlite_client():
    """Close every cached SQLiteClient connection."""
    clients = list(_sqlite_clients.values())
    _sqlite_clients.clear()
    for client in clients:
        await client.close()
