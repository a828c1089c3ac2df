"""API Routes module"""
from fastapi import APIRouter

from .triggers import router as triggers_router
from .events import router as events_router
from .flows import router as flows_router
from .drips import router as drips_router
from .segments import router as segments_router

# Main API router
api_router = APIRouter()

api_router.include_router(triggers_router, prefix="/triggers", tags=["Triggers"])
api_router.include_router(events_router, prefix="/events", tags=["Events"])
api_router.include_router(flows_router, prefix="/flows", tags=["Flows"])
api_router.include_router(drips_router, prefix="/drips", tags=["Drip Campaigns"])
api_router.include_router(segments_router, prefix="/segments", tags=["Segments"])

__all__ = ["api_router"]
