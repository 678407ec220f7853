from .knowledge import router as knowledge_router
from .maintenance import router as maintenance_router

__all__ = ["knowledge_router", "maintenance_router"]
