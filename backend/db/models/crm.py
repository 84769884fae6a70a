"""CRM entity models read by the automation engine.

These tables belong to the CRM's own data access layer. The engine reads
clients, jobs, invoices, tasks and profiles to build template variables,
inserts into ``tasks``, ``notifications`` and ``communication_logs``, and
writes ``jobs.status`` for the job status action.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class Client(BaseModel):
    """Customer of the field-service business."""

    __tablename__ = "clients"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    name: Mapped[str] = mapped_column(nullable=False, default="")
    first_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    email: Mapped[Optional[str]] = mapped_column(nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(nullable=True)
    address: Mapped[Optional[str]] = mapped_column(nullable=True)
    city: Mapped[Optional[str]] = mapped_column(nullable=True)
    state: Mapped[Optional[str]] = mapped_column(nullable=True)
    zip: Mapped[Optional[str]] = mapped_column(nullable=True)


class Profile(BaseModel):
    """Business user profile; carries company info and timezone."""

    __tablename__ = "profiles"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(nullable=True)
    email: Mapped[Optional[str]] = mapped_column(nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    company_email: Mapped[Optional[str]] = mapped_column(nullable=True)
    company_phone: Mapped[Optional[str]] = mapped_column(nullable=True)
    company_website: Mapped[Optional[str]] = mapped_column(nullable=True)
    booking_link: Mapped[Optional[str]] = mapped_column(nullable=True)
    review_link: Mapped[Optional[str]] = mapped_column(nullable=True)


class Job(BaseModel):
    """Field-service job."""

    __tablename__ = "jobs"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    technician_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    title: Mapped[Optional[str]] = mapped_column(nullable=True)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    job_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    service: Mapped[Optional[str]] = mapped_column(nullable=True)
    status: Mapped[Optional[str]] = mapped_column(nullable=True)
    address: Mapped[Optional[str]] = mapped_column(nullable=True)
    schedule_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Invoice(BaseModel):
    """Invoice issued to a client."""

    __tablename__ = "invoices"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(nullable=True)
    total: Mapped[Optional[float]] = mapped_column(nullable=True)
    balance_due: Mapped[Optional[float]] = mapped_column(nullable=True)
    status: Mapped[Optional[str]] = mapped_column(nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Task(BaseModel):
    """Internal to-do item, optionally created by an automation."""

    __tablename__ = "tasks"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(nullable=True)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(nullable=True)
    priority: Mapped[str] = mapped_column(default="medium")
    status: Mapped[str] = mapped_column(default="pending")
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by_automation: Mapped[Optional[str]] = mapped_column(nullable=True)


class Notification(BaseModel):
    """In-app notification shown to a business user."""

    __tablename__ = "notifications"

    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[str] = mapped_column(nullable=False, default="")
    message: Mapped[str] = mapped_column(nullable=False, default="")
    type: Mapped[str] = mapped_column(default="automation")
    entity_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    is_read: Mapped[bool] = mapped_column(default=False)


class CommunicationLog(BaseModel):
    """Outbound SMS or email sent on behalf of an automation."""

    __tablename__ = "communication_logs"

    organization_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    type: Mapped[str] = mapped_column(nullable=False)  # sms | email
    direction: Mapped[str] = mapped_column(default="outbound")
    to_address: Mapped[str] = mapped_column(nullable=False)
    content: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(default="sent")
    external_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
