"""Error taxonomy for memory storage and retrieval."""

from typing import Any, Dict, Optional

INVALID_ENTRY = "INVALID_ENTRY"
ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
QUERY_FAILED = "QUERY_FAILED"
MISSING_PATH = "MISSING_PATH"
CREATE_FAILED = "CREATE_FAILED"


class MemoryStoreError(Exception):
    """Base error carrying a stable error code for API responses."""

    def __init__(
        self,
        message: str,
        code: str = QUERY_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class MemoryValidationError(MemoryStoreError):
    """Malformed query or entry, rejected before the store is touched."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, INVALID_ENTRY, details)


class MemoryQueryError(MemoryStoreError):
    """An underlying store read failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, QUERY_FAILED, details)


class MemoryNotFoundError(MemoryStoreError):
    def __init__(self, entry_id: str):
        super().__init__(
            f"Memory entry not found: {entry_id}",
            ENTRY_NOT_FOUND,
            {"id": entry_id},
        )


class MemoryCreateError(MemoryStoreError):
    """An insert was rejected by the store."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, CREATE_FAILED, details)


class MissingStoreError(MemoryStoreError, ValueError):
    """No project path given and no default database configured."""

    def __init__(
        self,
        message: str = "project_path is required when DATABASE_URL is not set",
    ):
        super().__init__(message, MISSING_PATH)
