import hmac
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from db import get_sqlite_client
from scoped_memory import MemoryNotFoundError, MemoryStoreError
from scoped_memory.errors import ENTRY_NOT_FOUND, INVALID_ENTRY, MISSING_PATH
from scoped_memory.types import SOFT_DELETE_RETENTION_DAYS

_MCP_API_KEY_ENV = "MCP_API_KEY"
_MCP_API_KEY_HEADER = "X-MCP-API-Key"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_mcp_api_key() -> str:
    return str(os.getenv(_MCP_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    """Admin routes need MCP_API_KEY, or the loopback-only insecure override."""
    configured = _get_configured_mcp_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key():
            if _is_loopback_request(request):
                return
            raise _auth_failure("insecure_local_override_requires_loopback")
        raise _auth_failure("api_key_not_configured")

    provided = str(x_mcp_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failure("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class RelevanceUpdate(BaseModel):
    relevance_score: float = Field(ge=0.0, le=1.0)


def _raise_store_error(exc: MemoryStoreError):
    status_code = {
        INVALID_ENTRY: status.HTTP_400_BAD_REQUEST,
        MISSING_PATH: status.HTTP_400_BAD_REQUEST,
        ENTRY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    }.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=exc.to_dict())


def _resolve_client(project_path: Optional[str]):
    try:
        return get_sqlite_client(project_path)
    except MemoryStoreError as exc:
        _raise_store_error(exc)


@router.post("/expire")
async def expire_entries(project_path: Optional[str] = Query(None)):
    """Soft-delete every entry whose expires_at has passed."""
    client = _resolve_client(project_path)
    if not client.database_exists():
        return {"expired": 0}
    return {"expired": await client.expire_old_entries()}


@router.post("/purge")
async def purge_entries(
    older_than_days: float = Query(SOFT_DELETE_RETENTION_DAYS, ge=0.0),
    project_path: Optional[str] = Query(None),
):
    """Hard-delete rows soft-deleted more than older_than_days ago."""
    client = _resolve_client(project_path)
    if not client.database_exists():
        return {"purged": 0, "older_than_days": older_than_days}
    purged = await client.purge_deleted_entries(older_than_days=older_than_days)
    return {"purged": purged, "older_than_days": older_than_days}


@router.get("/stats/{project_id}")
async def get_stats(project_id: str, project_path: Optional[str] = Query(None)):
    client = _resolve_client(project_path)
    if not client.database_exists():
        return {
            "project_id": project_id,
            "database_exists": False,
            "total_entries": 0,
            "active_entries": 0,
            "deleted_entries": 0,
            "entries_by_kind": {},
        }
    stats = await client.get_memory_stats(project_id)
    return {"project_id": project_id, "database_exists": True, **stats}


@router.post("/entries/{mem_id}/relevance")
async def update_relevance(
    mem_id: str,
    payload: RelevanceUpdate,
    project_path: Optional[str] = Query(None),
):
    client = _resolve_client(project_path)
    try:
        updated = client.database_exists() and await client.update_relevance_score(
            mem_id, payload.relevance_score
        )
        if not updated:
            raise MemoryNotFoundError(mem_id)
    except MemoryStoreError as exc:
        _raise_store_error(exc)
    return {"id": mem_id, "relevance_score": payload.relevance_score}
