"""API v1 route modules."""

from backoffice.api.v1.routes.health import router as health_router
from backoffice.api.v1.routes.templates import router as templates_router
from backoffice.api.v1.routes.steps import router as steps_router
from backoffice.api.v1.routes.workflows import router as workflows_router
from backoffice.api.v1.routes.notifications import router as notifications_router

__all__ = [
    'health_router',
    'templates_router',
    'steps_router',
    'workflows_router',
    'notifications_router',
]
