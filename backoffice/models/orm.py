"""
Database models using SQLAlchemy 2.0 async style.
"""

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from backoffice.models.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class WorkflowTemplate(Base):
    """
    Catalog entry describing an ordered list of steps.
    Read-only to the engine; instances copy what they need at start time.
    """

    __tablename__ = "workflow_templates"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    business_id = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    # Relationships
    steps = relationship(
        "StepTemplate",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="StepTemplate.sort_order",
    )
    workflows = relationship("Workflow", back_populates="template")

    __table_args__ = (
        Index("idx_templates_business_name", "business_id", "name"),
    )

    def to_dict(self, include_steps=True):
        """Convert to dictionary"""
        result = {
            "id": self.id,
            "name": self.name,
            "business_id": self.business_id,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_steps:
            result["steps"] = [step.to_dict() for step in self.steps]
        return result


class StepTemplate(Base):
    """
    One ordered step definition of a template.

    At most one of days_from_start / days_from_previous drives the due date;
    with neither set the step is due on the workflow start date.
    """

    __tablename__ = "workflow_step_templates"

    id = Column(String, primary_key=True, default=_uuid)
    template_id = Column(String, ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False)
    is_required = Column(Boolean, nullable=False, default=True)
    days_from_start = Column(Integer, nullable=True)
    days_from_previous = Column(Integer, nullable=True)
    assignee_role = Column(String(50), nullable=True)

    # Relationships
    template = relationship("WorkflowTemplate", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("template_id", "sort_order", name="uq_step_templates_order"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "title": self.title,
            "description": self.description,
            "sort_order": self.sort_order,
            "is_required": self.is_required,
            "days_from_start": self.days_from_start,
            "days_from_previous": self.days_from_previous,
            "assignee_role": self.assignee_role,
        }


class Workflow(Base):
    """
    One execution of a template against one customer-business relationship.
    completed_at is set only on the terminal transition (COMPLETED / CANCELLED).
    """

    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=_uuid)
    template_id = Column(String, ForeignKey("workflow_templates.id"), nullable=False)
    customer_business_id = Column(String, nullable=False)
    status = Column(String(20), nullable=False)  # WorkflowStatus enum value
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    # Relationships
    template = relationship("WorkflowTemplate", back_populates="workflows")
    steps = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.sort_order",
    )

    # Indexes - optimized for common queries
    __table_args__ = (
        Index("idx_workflows_status", "status"),
        Index("idx_workflows_customer_business", "customer_business_id", "created_at"),
        Index("idx_workflows_created_desc", "created_at"),
    )

    def to_dict(self, include_steps=True):
        """Convert to dictionary"""
        result = {
            "id": self.id,
            "template_id": self.template_id,
            "customer_business_id": self.customer_business_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_steps:
            result["steps"] = [step.to_dict() for step in self.steps]
        return result

    def to_event_data(self) -> dict:
        """JSON-safe payload for event bus publication; steps must be loaded"""
        assignee_ids = []
        for step in self.steps:
            if step.assignee_id and step.assignee_id not in assignee_ids:
                assignee_ids.append(step.assignee_id)

        return {
            "workflow_id": self.id,
            "template_id": self.template_id,
            "customer_business_id": self.customer_business_id,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "assignee_ids": assignee_ids,
        }


class WorkflowStep(Base):
    """
    One unit of work inside a workflow.
    Title, description and sort order are copied from the template at creation.
    """

    __tablename__ = "workflow_steps"

    id = Column(String, primary_key=True, default=_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False)
    step_template_id = Column(
        String, ForeignKey("workflow_step_templates.id", ondelete="SET NULL"), nullable=True
    )
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False)
    assignee_id = Column(String, nullable=True)
    due_date = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False)  # StepStatus enum value
    completed_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)
    overdue_notified_at = Column(DateTime, nullable=True)

    # Relationships
    workflow = relationship("Workflow", back_populates="steps")
    step_template = relationship("StepTemplate")

    # Indexes
    __table_args__ = (
        UniqueConstraint("workflow_id", "sort_order", name="uq_steps_workflow_order"),
        Index("idx_steps_workflow_status", "workflow_id", "status"),
        Index("idx_steps_assignee_due", "assignee_id", "status", "due_date"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_template_id": self.step_template_id,
            "title": self.title,
            "description": self.description,
            "sort_order": self.sort_order,
            "assignee_id": self.assignee_id,
            "due_date": self.due_date,
            "status": self.status,
            "completed_at": self.completed_at,
            "note": self.note,
        }

    def to_event_data(self) -> dict:
        """JSON-safe payload for event bus publication"""
        return {
            "step_id": self.id,
            "workflow_id": self.workflow_id,
            "title": self.title,
            "sort_order": self.sort_order,
            "assignee_id": self.assignee_id,
            "status": self.status,
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
        }


class Notification(Base):
    """
    In-app notification for a single user.
    Written by event handlers after engine operations commit.
    """

    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    kind = Column(String(50), nullable=False)  # NotificationKind enum value
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=True)
    link = Column(String(500), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "is_read": self.is_read,
            "created_at": self.created_at,
        }
