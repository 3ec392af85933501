"""
Read helpers for action_report entries.

Action reports are written by whoever runs quick actions; each one carries
the command outcome in its data payload (exit_code, duration_ms). Entries
written by the web frontend use the camelCase keys exitCode and durationMs,
so both spellings are read.
"""

from typing import Any, Dict, List, Optional

from .errors import MemoryValidationError
from .query import MemoryStorePort, QueryBuilder
from .retrieval import _normalize_limit, _require_project_id, _store_ready
from .types import MemoryEntry, MemoryKind

DEFAULT_ACTION_REPORT_LIMIT = 20
ACTION_STATS_SAMPLE = 100


def _data_value(data: Optional[Dict[str, Any]], *keys: str) -> Any:
    if not data:
        return None
    for key in keys:
        if key in data:
            return data[key]
    return None


async def get_recent_action_reports(
    store: Optional[MemoryStorePort],
    project_id: str,
    bead_id: Optional[str] = None,
    session_id: Optional[str] = None,
    limit: Optional[int] = DEFAULT_ACTION_REPORT_LIMIT,
) -> List[MemoryEntry]:
    """Newest action reports first. Expired reports are still returned."""
    _require_project_id(project_id)
    limit = _normalize_limit(limit)
    if not _store_ready(store):
        return []

    builder = QueryBuilder(project_id).active().kinds([MemoryKind.ACTION_REPORT])
    if bead_id:
        builder.eq("bead_id", bead_id)
    if session_id:
        builder.eq("session_id", session_id)
    return await store.query_entries(builder.order_by("created_at").limit(limit).build())


async def get_action_report(
    store: Optional[MemoryStorePort], project_id: str, entry_id: str
) -> Optional[MemoryEntry]:
    if not entry_id:
        raise MemoryValidationError("entry id is required")
    _require_project_id(project_id)
    if not _store_ready(store):
        return None

    query = (
        QueryBuilder(project_id)
        .active()
        .kinds([MemoryKind.ACTION_REPORT])
        .eq("id", entry_id)
        .limit(1)
        .build()
    )
    entries = await store.query_entries(query)
    return entries[0] if entries else None


async def get_action_stats(
    store: Optional[MemoryStorePort],
    project_id: str,
    bead_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, int]:
    """
    Success/failure counts over the most recent action reports.

    A report counts as a success only when its exit code is exactly 0; a
    missing exit code is a failure. Missing durations count as 0 ms.
    """
    reports = await get_recent_action_reports(
        store, project_id, bead_id=bead_id, session_id=session_id, limit=ACTION_STATS_SAMPLE
    )
    if not reports:
        return {
            "total_actions": 0,
            "success_count": 0,
            "failure_count": 0,
            "average_duration_ms": 0,
        }

    success_count = 0
    total_duration = 0
    for report in reports:
        exit_code = _data_value(report.data, "exit_code", "exitCode")
        if exit_code == 0 and not isinstance(exit_code, bool):
            success_count += 1
        duration = _data_value(report.data, "duration_ms", "durationMs")
        if isinstance(duration, (int, float)) and not isinstance(duration, bool):
            total_duration += duration

    return {
        "total_actions": len(reports),
        "success_count": success_count,
        "failure_count": len(reports) - success_count,
        "average_duration_ms": int(total_duration / len(reports) + 0.5),
    }
