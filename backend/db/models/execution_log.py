"""Automation execution log model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus
from db.base import BaseModel


class AutomationExecutionLog(BaseModel):
    """One durable record of running a workflow for one triggering event.

    Created by the trigger emitters in state ``pending``; mutated only by
    the automation processor and never deleted (it is the audit trail).

    Attributes:
        id: Unique identifier (UUID string)
        workflow_id: Workflow to run (no FK: the workflow may be gone)
        automation_id: Legacy automation reference
        organization_id: Owning organization
        trigger_type: Business event that produced the log
        trigger_data: Entity id/type, statuses and arbitrary context
        status: pending, running, waiting, completed, failed, skipped, expired
        details: retry_count, last_error, step_results, execution_time_ms...
        error_message: Last error, annotated with the retry counter
        dedup_key: ``workflow_id:entity_id:new_status``
        resume_at: When a parked (waiting) run becomes due again
        started_at: First claim timestamp
        completed_at: Terminal timestamp
        created_at: Creation timestamp, defines processing order
    """

    __tablename__ = "automation_execution_logs"

    workflow_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    automation_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    trigger_type: Mapped[str] = mapped_column(nullable=False, default="manual")
    trigger_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    dedup_key: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def retry_count(self) -> int:
        """Retries already spent on this log."""
        return int((self.details or {}).get("retry_count", 0) or 0)
