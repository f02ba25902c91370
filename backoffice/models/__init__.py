"""Data models and schemas."""

from backoffice.models.database import Base, Database, get_db
from backoffice.models.orm import (
    WorkflowTemplate,
    StepTemplate,
    Workflow,
    WorkflowStep,
    Notification,
)
from backoffice.models.schemas import (
    WorkflowStatus,
    StepStatus,
    EventType,
    NotificationKind,
    OPEN_STEP_STATUSES,
    RESOLVED_STEP_STATUSES,
    STEP_TRANSITIONS,
    StepTemplateCreate,
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
    StepTemplateReplace,
    WorkflowTemplateResponse,
    WorkflowStart,
    WorkflowResponse,
    WorkflowStepResponse,
    WorkflowListResponse,
    WorkflowStepUpdate,
    NotificationResponse,
    HealthResponse,
)

__all__ = [
    # Database
    'Base',
    'Database',
    'get_db',
    # ORM Models
    'WorkflowTemplate',
    'StepTemplate',
    'Workflow',
    'WorkflowStep',
    'Notification',
    # Schemas
    'WorkflowStatus',
    'StepStatus',
    'EventType',
    'NotificationKind',
    'OPEN_STEP_STATUSES',
    'RESOLVED_STEP_STATUSES',
    'STEP_TRANSITIONS',
    'StepTemplateCreate',
    'WorkflowTemplateCreate',
    'WorkflowTemplateUpdate',
    'StepTemplateReplace',
    'WorkflowTemplateResponse',
    'WorkflowStart',
    'WorkflowResponse',
    'WorkflowStepResponse',
    'WorkflowListResponse',
    'WorkflowStepUpdate',
    'NotificationResponse',
    'HealthResponse',
]
