"""Shared pytest fixtures for the automation engine test suite.

Provides:
- In-memory async SQLite database (no PostgreSQL needed for tests)
- Session factory and the three stores
- Recording SMS/email senders and a controllable clock
- Factories for workflows, execution logs and CRM entities
- A fully wired AutomationProcessor
"""

import os
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from automation.metrics import MetricsUpdater  # noqa: E402
from automation.processor import AutomationProcessor, ProcessorConfig  # noqa: E402
from automation.retry import FailureClassifier  # noqa: E402
from automation.steps import StepInterpreter  # noqa: E402
from automation.store import CrmStore, ExecutionLogStore, WorkflowStore  # noqa: E402
from automation.variables import VariableResolver  # noqa: E402
from automation.workflow_cache import WorkflowCache  # noqa: E402
from core.utils import utcnow  # noqa: E402
from db.base import Base  # noqa: E402
from db.models import (  # noqa: E402
    AutomationExecutionLog,
    AutomationWorkflow,
    Client,
    Invoice,
    Job,
    Profile,
)
from db.session import create_session_factory  # noqa: E402
from notifications.channels import (  # noqa: E402
    ChannelType,
    DeliveryResult,
    EmailSender,
    SmsSender,
)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSmsSender(SmsSender):
    """Captures sends; fails with ``error`` while it is set."""

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Optional[str] = None

    async def send(self, phone, message, correlation):
        self.calls.append({"phone": phone, "message": message, "correlation": correlation})
        if self.error:
            return DeliveryResult(
                success=False, channel=ChannelType.SMS, recipient=phone, error=self.error
            )
        return DeliveryResult(
            success=True, channel=ChannelType.SMS, recipient=phone, message_id=f"sms-{len(self.calls)}"
        )


class RecordingEmailSender(EmailSender):
    """Captures sends; fails with ``error`` while it is set."""

    def __init__(self):
        self.calls: list[dict] = []
        self.error: Optional[str] = None

    async def send(self, to, subject, html, text, correlation):
        self.calls.append({
            "to": to, "subject": subject, "html": html, "text": text, "correlation": correlation,
        })
        if self.error:
            return DeliveryResult(
                success=False, channel=ChannelType.EMAIL, recipient=to, error=self.error
            )
        return DeliveryResult(
            success=True, channel=ChannelType.EMAIL, recipient=to, message_id=f"email-{len(self.calls)}"
        )


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records durations."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; StaticPool shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def log_store(session_factory):
    return ExecutionLogStore(session_factory)


@pytest.fixture
def workflow_store(session_factory):
    return WorkflowStore(session_factory)


@pytest.fixture
def crm_store(session_factory):
    return CrmStore(session_factory)


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def add(session_factory):
    """Persist ORM objects: ``await add(obj, ...)`` returns the first one."""

    async def _add(*objects):
        async with session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0]

    return _add


@pytest_asyncio.fixture
async def owner(add):
    """Business owner profile with company details."""
    return await add(Profile(
        id=str(uuid4()),
        name="Olivia Owner",
        email="owner@acmehvac.test",
        timezone="America/New_York",
        company_name="Acme HVAC",
        company_phone="+15550000001",
        company_email="office@acmehvac.test",
        booking_link="https://acmehvac.test/book",
    ))


@pytest_asyncio.fixture
async def technician(add):
    return await add(Profile(
        id=str(uuid4()),
        name="Tom Tech",
        phone="+15550000002",
        email="tom@acmehvac.test",
    ))


@pytest_asyncio.fixture
async def client_row(add):
    return await add(Client(
        id=str(uuid4()),
        name="Jane Doe",
        first_name="Jane",
        last_name="Doe",
        email="jane@example.com",
        phone="+15551234567",
        address="1 Main St",
        city="Springfield",
        state="IL",
        zip="62701",
    ))


@pytest_asyncio.fixture
async def job(add, client_row, technician, owner):
    return await add(Job(
        id=str(uuid4()),
        user_id=owner.id,
        client_id=client_row.id,
        technician_id=technician.id,
        title="AC repair",
        job_type="Repair",
        service="HVAC",
        status="completed",
        address="1 Main St",
        schedule_start=datetime(2026, 10, 20, 18, 30),
    ))


@pytest_asyncio.fixture
async def invoice(add, client_row, job, owner):
    return await add(Invoice(
        id=str(uuid4()),
        user_id=owner.id,
        client_id=client_row.id,
        job_id=job.id,
        invoice_number="INV-1001",
        total=1500.0,
        balance_due=1234.5,
        status="overdue",
        due_date=datetime(2026, 10, 9, 16, 0),
    ))


@pytest_asyncio.fixture
async def make_workflow(add, owner):
    """Factory: ``await make_workflow(steps=[...], **columns)``."""

    async def _make(steps=None, **columns) -> AutomationWorkflow:
        columns.setdefault("name", "Job completed follow-up")
        columns.setdefault("trigger_type", "job_status_changed")
        columns.setdefault("user_id", owner.id)
        return await add(AutomationWorkflow(id=str(uuid4()), steps=steps, **columns))

    return _make


@pytest_asyncio.fixture
async def make_log(add, job):
    """Factory: ``await make_log(workflow, trigger_data=None, **columns)``.

    Defaults to a job-completed trigger for the seeded job.
    """

    async def _make(workflow, trigger_data=None, **columns) -> AutomationExecutionLog:
        if trigger_data is None:
            trigger_data = {
                "entity_id": job.id,
                "entity_type": "job",
                "new_status": "completed",
                "old_status": "in_progress",
            }
        columns.setdefault("status", "pending")
        columns.setdefault("details", {"retry_count": 0})
        return await add(AutomationExecutionLog(
            id=str(uuid4()),
            workflow_id=workflow.id if workflow is not None else str(uuid4()),
            trigger_type="job_status_changed",
            trigger_data=trigger_data,
            **columns,
        ))

    return _make


# ---------------------------------------------------------------------------
# Processor fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def processor(log_store, workflow_store, crm_store, sms_sender, email_sender, fake_sleep, clock):
    """AutomationProcessor wired to the test database and recording senders."""
    return AutomationProcessor(
        log_store=log_store,
        workflow_cache=WorkflowCache(workflow_store, ttl_seconds=300),
        interpreter=StepInterpreter(
            crm_store,
            sms_sender,
            email_sender,
            inline_delay_max_seconds=5,
            sleep=fake_sleep,
            clock=clock,
        ),
        resolver=VariableResolver(crm_store),
        metrics=MetricsUpdater(workflow_store),
        classifier=FailureClassifier(max_retries=3),
        config=ProcessorConfig(poll_interval_seconds=3600, batch_size=10),
        clock=clock,
    )
