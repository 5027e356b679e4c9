# API Routes
from .notification_routes import router as notification_router
from .chronology_routes import router as chronology_router

__all__ = [
    "notification_router",
    "chronology_router",
]
