from .maintenance import router as maintenance_router
from .memory import router as memory_router

__all__ = ["maintenance_router", "memory_router"]
