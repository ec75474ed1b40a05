"""Top-level API router."""

from fastapi import APIRouter

from tracker.api.routes.health import router as health_router
from tracker.api.routes.performance import router as performance_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(performance_router)
