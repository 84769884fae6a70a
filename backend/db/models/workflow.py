"""Automation workflow model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import BaseModel


class AutomationWorkflow(BaseModel):
    """Stored automation workflow definition.

    Owned by the business-configuration side; the engine only reads it,
    apart from the execution metrics columns.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        user_id: Owner profile, used for company info and notifications
        name: Workflow name
        trigger_type: Business event that starts the workflow
        steps: Ordered step list (current storage location)
        template_config: Legacy storage, steps under ``template_config.steps``
        workflow_config: Legacy storage, steps under ``workflow_config.steps``
        is_active: Whether the workflow may run
        status: Workflow status; only ``active`` is runnable
        execution_count: Number of finished runs
        success_count: Number of successful runs
        last_executed_at: Timestamp of the last finished run
        last_triggered_at: Timestamp of the last successful trigger
    """

    __tablename__ = "automation_workflows"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    name: Mapped[str] = mapped_column(nullable=False, default="")
    trigger_type: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    steps: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    template_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    workflow_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.ACTIVE.value, index=True
    )
    execution_count: Mapped[int] = mapped_column(default=0)
    success_count: Mapped[int] = mapped_column(default=0)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
