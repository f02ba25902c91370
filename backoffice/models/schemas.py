"""
Pydantic schemas for API requests and responses.
Includes enums for workflow and step status management.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, Literal, List
from enum import Enum
from datetime import datetime


# ============================================================================
# Enums
# ============================================================================


class WorkflowStatus(str, Enum):
    """Workflow instance states"""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Workflow step states"""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    WAITING = "WAITING"  # Set by collaborators, never by the engine
    DONE = "DONE"
    SKIPPED = "SKIPPED"


class EventType(str, Enum):
    """Event types for the event bus"""

    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    STEP_COMPLETED = "step.completed"
    STEP_SKIPPED = "step.skipped"
    STEP_ACTIVATED = "step.activated"
    STEP_OVERDUE = "step.overdue"


class NotificationKind(str, Enum):
    """Kinds of in-app notifications"""

    STEP_ASSIGNED = "STEP_ASSIGNED"
    STEP_OVERDUE = "STEP_OVERDUE"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"


# ============================================================================
# State Machine Configuration
# ============================================================================

# Statuses a step can still leave
OPEN_STEP_STATUSES = (StepStatus.PENDING, StepStatus.ACTIVE, StepStatus.WAITING)

# Statuses a step never leaves
RESOLVED_STEP_STATUSES = (StepStatus.DONE, StepStatus.SKIPPED)

# Valid step transitions
STEP_TRANSITIONS = {
    StepStatus.PENDING: [StepStatus.ACTIVE, StepStatus.SKIPPED],
    StepStatus.ACTIVE: [StepStatus.DONE, StepStatus.SKIPPED, StepStatus.WAITING],
    StepStatus.WAITING: [StepStatus.ACTIVE, StepStatus.SKIPPED],
    StepStatus.DONE: [],  # Terminal
    StepStatus.SKIPPED: [],  # Terminal
}


# ============================================================================
# Template Schemas
# ============================================================================


class StepTemplateCreate(BaseModel):
    """One ordered step definition inside a template"""

    title: str = Field(..., min_length=1, max_length=200, description="Step title")
    description: Optional[str] = Field(None, description="Step instructions")
    sort_order: int = Field(..., description="Position of the step within the template")
    is_required: bool = Field(default=True, description="Whether the step must be done")
    days_from_start: Optional[int] = Field(
        None, ge=0, description="Due date offset from the workflow start date"
    )
    days_from_previous: Optional[int] = Field(
        None, ge=0, description="Due date offset from the previous step's due date"
    )
    assignee_role: Optional[str] = Field(None, max_length=50, description="Suggested assignee role")

    @model_validator(mode="after")
    def check_single_offset_rule(self):
        if self.days_from_start is not None and self.days_from_previous is not None:
            raise ValueError("Set at most one of days_from_start and days_from_previous")
        return self


def _check_unique_sort_orders(steps: List[StepTemplateCreate]):
    orders = [step.sort_order for step in steps]
    if len(orders) != len(set(orders)):
        raise ValueError("Step sort_order values must be unique within a template")


class WorkflowTemplateCreate(BaseModel):
    """Request to create a workflow template"""

    name: str = Field(..., min_length=1, max_length=200, description="Template name")
    business_id: str = Field(..., min_length=1, description="Owning business")
    description: Optional[str] = Field(None, description="Template description")
    steps: List[StepTemplateCreate] = Field(..., min_length=1, description="Ordered step definitions")

    @model_validator(mode="after")
    def check_sort_orders(self):
        _check_unique_sort_orders(self.steps)
        return self


class WorkflowTemplateUpdate(BaseModel):
    """Partial update of template metadata"""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class StepTemplateReplace(BaseModel):
    """Full replacement of a template's step definitions"""

    steps: List[StepTemplateCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_sort_orders(self):
        _check_unique_sort_orders(self.steps)
        return self


class StepTemplateResponse(BaseModel):
    """Step template representation"""

    id: str
    template_id: str
    title: str
    description: Optional[str] = None
    sort_order: int
    is_required: bool
    days_from_start: Optional[int] = None
    days_from_previous: Optional[int] = None
    assignee_role: Optional[str] = None


class WorkflowTemplateResponse(BaseModel):
    """Workflow template representation"""

    id: str
    name: str
    business_id: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    steps: List[StepTemplateResponse] = Field(default_factory=list)


# ============================================================================
# Workflow Schemas
# ============================================================================


class WorkflowStart(BaseModel):
    """Request to start a workflow from a template"""

    template_id: str = Field(..., min_length=1, description="Template to instantiate")
    customer_business_id: str = Field(..., min_length=1, description="Customer-business subject")
    assignee_id: str = Field(..., min_length=1, description="Initial assignee of every step")
    start_date: Optional[datetime] = Field(
        None, description="Schedule anchor; defaults to the current time"
    )


class WorkflowStepResponse(BaseModel):
    """Workflow step representation"""

    id: str
    workflow_id: str
    step_template_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    sort_order: int
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    status: StepStatus
    completed_at: Optional[datetime] = None
    note: Optional[str] = None


class WorkflowResponse(BaseModel):
    """Workflow representation"""

    id: str
    template_id: str
    customer_business_id: str
    status: WorkflowStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    steps: List[WorkflowStepResponse] = Field(default_factory=list)


class Pagination(BaseModel):
    """Paging metadata for list endpoints"""

    page: int
    per_page: int
    total: int
    total_pages: int


class WorkflowListResponse(BaseModel):
    """List of workflows with pagination"""

    data: List[WorkflowResponse]
    pagination: Pagination


class WorkflowStepUpdate(BaseModel):
    """Reassign or annotate a step; status changes go through the engine"""

    assignee_id: Optional[str] = Field(None, min_length=1)
    note: Optional[str] = Field(None, max_length=2000)


# ============================================================================
# Notification Schemas
# ============================================================================


class NotificationResponse(BaseModel):
    """In-app notification representation"""

    id: str
    user_id: str
    kind: NotificationKind
    title: str
    message: Optional[str] = None
    link: Optional[str] = None
    is_read: bool
    created_at: datetime


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response"""

    status: Literal["healthy", "unhealthy"]
    timestamp: float = Field(default_factory=lambda: datetime.now().timestamp())
    version: str = "1.0.0"
