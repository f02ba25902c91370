"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from backoffice.api.v1.routes import (
    health_router,
    templates_router,
    steps_router,
    workflows_router,
    notifications_router,
)

# Create main v1 router
router = APIRouter()

# Steps are mounted before workflows so /api/workflows/steps/... never
# reaches the /{workflow_id} routes
router.include_router(health_router)
router.include_router(templates_router)
router.include_router(steps_router)
router.include_router(workflows_router)
router.include_router(notifications_router)

__all__ = ['router']
