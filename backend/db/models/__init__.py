"""Database models for the automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import AutomationWorkflow
from db.models.execution_log import AutomationExecutionLog
from db.models.crm import (
    Client,
    CommunicationLog,
    Invoice,
    Job,
    Notification,
    Profile,
    Task,
)

__all__ = [
    "AutomationWorkflow",
    "AutomationExecutionLog",
    "Client",
    "CommunicationLog",
    "Invoice",
    "Job",
    "Notification",
    "Profile",
    "Task",
]
