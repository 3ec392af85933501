from .sqlite_client import (
    SQLiteClient,
    close_sqlite_client,
    get_sqlite_client,
    memory_database_url,
)

__all__ = [
    "SQLiteClient",
    "close_sqlite_client",
    "get_sqlite_client",
    "memory_database_url",
]
