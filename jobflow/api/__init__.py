"""
API package for the jobflow backend.

This package aggregates all API routers to be included in the FastAPI
application. The API is versioned under ``/api/v1``.
"""

from fastapi import APIRouter, Depends
from .v1.automation_rules import router as automation_rules_router
from .v1.automation_runs import router as automation_runs_router
from .v1.automation_events import router as automation_events_router
from .v1.health import router as health_router
from ..core.auth import get_current_user

api_router = APIRouter()
protected = [Depends(get_current_user)]
api_router.include_router(automation_rules_router, dependencies=protected)
api_router.include_router(automation_runs_router, dependencies=protected)
api_router.include_router(automation_events_router, dependencies=protected)
api_router.include_router(health_router)
