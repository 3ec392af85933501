import os
from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from api import memory_router, maintenance_router
from db import get_sqlite_client, close_sqlite_client


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the default store (when DATABASE_URL is set) and close all stores on exit."""
    print("Memory API starting...")

    if os.getenv("DATABASE_URL"):
        try:
            await get_sqlite_client().init_db()
            print("SQLite database initialized.")
        except Exception as e:
            print(f"Failed to initialize SQLite: {e}")
            raise RuntimeError("Failed to initialize SQLite during startup") from e
    else:
        print("DATABASE_URL not set; serving per-project databases only.")

    yield

    print("Closing database connections...")
    await close_sqlite_client()


app = FastAPI(
    title="Beads Memory API",
    description="Scoped memory retrieval for agent sessions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Beads Memory API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    if not os.getenv("DATABASE_URL"):
        payload["database"] = {"configured": False}
        return payload

    try:
        client = get_sqlite_client()
        payload["database"] = {
            "configured": True,
            "exists": client.database_exists(),
        }
    except Exception as e:
        payload["status"] = "degraded"
        payload["database"] = {"configured": True, "reason": str(e)}
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
