"""Persistence layer for the automation processor.

Every state write on an execution log is a compare-and-set on its current
status (``UPDATE ... WHERE id = :id AND status = :expected``), so two
processes polling the same table can never both run one log, and a log in
a terminal state is never written again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ACTIVE_STATUSES, ExecutionStatus
from core.exceptions import InvalidTransitionError
from automation.dedup import dedup_key
from core.utils import utcnow
from db.models.crm import Client, CommunicationLog, Invoice, Job, Notification, Profile, Task
from db.models.execution_log import AutomationExecutionLog
from db.models.workflow import AutomationWorkflow

logger = logging.getLogger(__name__)

_S = ExecutionStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    _S.PENDING.value: frozenset({_S.RUNNING.value, _S.SKIPPED.value, _S.EXPIRED.value}),
    _S.RUNNING.value: frozenset({
        _S.COMPLETED.value, _S.FAILED.value, _S.PENDING.value, _S.WAITING.value,
    }),
    _S.WAITING.value: frozenset({_S.RUNNING.value}),
}


def check_transition(from_status: str, to_status: str) -> None:
    """Raise InvalidTransitionError unless ``from_status -> to_status`` is legal."""
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransitionError(
            f"Illegal execution log transition {from_status} -> {to_status}"
        )


# ─── Workflow snapshot ─────────────────────────────────────────

@dataclass(frozen=True)
class WorkflowDefinition:
    """Detached, read-only copy of a workflow row, safe to cache."""

    id: str
    name: str = ""
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    trigger_type: Optional[str] = None
    steps: Optional[list] = None
    template_config: Optional[dict] = None
    workflow_config: Optional[dict] = None
    is_active: bool = True
    status: str = "active"
    execution_count: int = 0
    success_count: int = 0
    last_executed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: AutomationWorkflow) -> "WorkflowDefinition":
        return cls(
            id=row.id,
            name=row.name or "",
            organization_id=row.organization_id,
            user_id=row.user_id,
            trigger_type=row.trigger_type,
            steps=list(row.steps) if row.steps else None,
            template_config=dict(row.template_config) if row.template_config else None,
            workflow_config=dict(row.workflow_config) if row.workflow_config else None,
            is_active=bool(row.is_active),
            status=row.status or "",
            execution_count=row.execution_count or 0,
            success_count=row.success_count or 0,
            last_executed_at=row.last_executed_at,
        )


class WorkflowStore:
    """Workflow lookups and server-side metrics increments."""

    supports_atomic_increment = True

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self._session_factory() as session:
            row = await session.get(AutomationWorkflow, workflow_id)
            return WorkflowDefinition.from_model(row) if row else None

    async def increment_metrics(
        self, workflow_id: str, success: bool, at: Optional[datetime] = None
    ) -> None:
        """Atomically bump execution (and success) counters."""
        at = at or utcnow()
        values: dict[str, Any] = {
            "execution_count": AutomationWorkflow.execution_count + 1,
            "last_executed_at": at,
        }
        if success:
            values["success_count"] = AutomationWorkflow.success_count + 1
            values["last_triggered_at"] = at
        async with self._session_factory() as session:
            await session.execute(
                update(AutomationWorkflow)
                .where(AutomationWorkflow.id == workflow_id)
                .values(**values)
            )
            await session.commit()

    async def write_metrics(
        self,
        workflow_id: str,
        execution_count: int,
        success_count: int,
        at: datetime,
        success: bool,
    ) -> None:
        """Overwrite counters; used only by the non-atomic metrics fallback."""
        values: dict[str, Any] = {
            "execution_count": execution_count,
            "success_count": success_count,
            "last_executed_at": at,
        }
        if success:
            values["last_triggered_at"] = at
        async with self._session_factory() as session:
            await session.execute(
                update(AutomationWorkflow)
                .where(AutomationWorkflow.id == workflow_id)
                .values(**values)
            )
            await session.commit()


# ─── Execution logs ────────────────────────────────────────────

class ExecutionLogStore:
    """Queries and guarded state transitions for automation execution logs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, log_id: str) -> Optional[AutomationExecutionLog]:
        async with self._session_factory() as session:
            return await session.get(AutomationExecutionLog, log_id)

    async def fetch_pending(
        self, limit: int, exclude_ids: Iterable[str] = ()
    ) -> Sequence[AutomationExecutionLog]:
        """Oldest pending logs first, bounded to ``limit``."""
        query = (
            select(AutomationExecutionLog)
            .where(AutomationExecutionLog.status == _S.PENDING.value)
            .order_by(AutomationExecutionLog.created_at.asc(), AutomationExecutionLog.id.asc())
            .limit(limit)
        )
        excluded = list(exclude_ids)
        if excluded:
            query = query.where(AutomationExecutionLog.id.not_in(excluded))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().all()

    async def fetch_due_waiting(
        self, now: datetime, limit: int
    ) -> Sequence[AutomationExecutionLog]:
        """Parked logs whose ``resume_at`` has passed, earliest first."""
        if limit <= 0:
            return []
        query = (
            select(AutomationExecutionLog)
            .where(
                AutomationExecutionLog.status == _S.WAITING.value,
                AutomationExecutionLog.resume_at <= now,
            )
            .order_by(AutomationExecutionLog.resume_at.asc(), AutomationExecutionLog.created_at.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalars().all()

    async def claim(self, log_id: str) -> Optional[AutomationExecutionLog]:
        """Move a pending or waiting log to running.

        Returns the refreshed row, or None if another claimant won or the
        log is no longer claimable.
        """
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(AutomationExecutionLog)
                .where(
                    AutomationExecutionLog.id == log_id,
                    AutomationExecutionLog.status.in_([_S.PENDING.value, _S.WAITING.value]),
                )
                .values(
                    status=_S.RUNNING.value,
                    started_at=func.coalesce(AutomationExecutionLog.started_at, now),
                    resume_at=None,
                )
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(AutomationExecutionLog, log_id, populate_existing=True)

    async def transition(
        self,
        log_id: str,
        from_status: str,
        to_status: str,
        **values: Any,
    ) -> bool:
        """Compare-and-set ``from_status -> to_status``, writing ``values``.

        Returns False when the row was not in ``from_status``.
        """
        check_transition(from_status, to_status)
        async with self._session_factory() as session:
            result = await session.execute(
                update(AutomationExecutionLog)
                .where(
                    AutomationExecutionLog.id == log_id,
                    AutomationExecutionLog.status == from_status,
                )
                .values(status=to_status, **values)
            )
            await session.commit()
            changed = result.rowcount == 1
        if not changed:
            logger.warning(
                "Execution log %s was not %s; %s write dropped", log_id, from_status, to_status
            )
        return changed

    async def complete(self, log_id: str, details: dict) -> bool:
        return await self.transition(
            log_id, _S.RUNNING.value, _S.COMPLETED.value,
            completed_at=utcnow(), details=details, error_message=None,
        )

    async def fail(self, log_id: str, error_message: str, details: dict) -> bool:
        return await self.transition(
            log_id, _S.RUNNING.value, _S.FAILED.value,
            completed_at=utcnow(), error_message=error_message, details=details,
        )

    async def requeue(self, log_id: str, error_message: str, details: dict) -> bool:
        return await self.transition(
            log_id, _S.RUNNING.value, _S.PENDING.value,
            error_message=error_message, details=details,
        )

    async def park(self, log_id: str, resume_at: datetime, details: dict) -> bool:
        return await self.transition(
            log_id, _S.RUNNING.value, _S.WAITING.value,
            resume_at=resume_at, details=details,
        )

    async def mark_skipped(self, log_ids: Sequence[str], message: str) -> int:
        """Skip pending logs; rows that already left ``pending`` are untouched."""
        if not log_ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(AutomationExecutionLog)
                .where(
                    AutomationExecutionLog.id.in_(list(log_ids)),
                    AutomationExecutionLog.status == _S.PENDING.value,
                )
                .values(
                    status=_S.SKIPPED.value,
                    error_message=message,
                    completed_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def expire_stale(self, cutoff: datetime, message: str) -> int:
        """Expire every pending log created before ``cutoff``."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(AutomationExecutionLog)
                .where(
                    AutomationExecutionLog.status == _S.PENDING.value,
                    AutomationExecutionLog.created_at < cutoff,
                )
                .values(
                    status=_S.EXPIRED.value,
                    error_message=message,
                    completed_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def count_pending(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(AutomationExecutionLog)
                .where(AutomationExecutionLog.status == _S.PENDING.value)
            )
            return result.scalar() or 0

    async def count_recent_failures(self, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(AutomationExecutionLog)
                .where(
                    AutomationExecutionLog.status == _S.FAILED.value,
                    AutomationExecutionLog.completed_at >= since,
                )
            )
            return result.scalar() or 0

    async def enqueue(
        self,
        workflow_id: str,
        trigger_type: str,
        trigger_data: Optional[dict] = None,
        organization_id: Optional[str] = None,
        automation_id: Optional[str] = None,
    ) -> Optional[AutomationExecutionLog]:
        """Create a pending log unless an active one shares its dedup key.

        Returns the new log, or None when the event is a duplicate.
        """
        key = dedup_key(workflow_id, trigger_data)
        async with self._session_factory() as session:
            existing = await session.execute(
                select(AutomationExecutionLog.id)
                .where(
                    AutomationExecutionLog.dedup_key == key,
                    AutomationExecutionLog.status.in_(list(ACTIVE_STATUSES)),
                )
                .limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                logger.info("Duplicate trigger for %s ignored", key)
                return None

            log = AutomationExecutionLog(
                workflow_id=workflow_id,
                automation_id=automation_id,
                organization_id=organization_id,
                trigger_type=trigger_type,
                trigger_data=trigger_data or {},
                status=_S.PENDING.value,
                details={"retry_count": 0},
                dedup_key=key,
            )
            session.add(log)
            await session.commit()
            return log


# ─── CRM access ────────────────────────────────────────────────

@dataclass
class NewTask:
    """Task row to be created by a ``create_task`` action."""

    title: str
    description: str = ""
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    job_id: Optional[str] = None
    client_id: Optional[str] = None
    assigned_to: Optional[str] = None
    priority: str = "medium"
    due_date: Optional[datetime] = None
    created_by_automation: Optional[str] = None


@dataclass
class NewCommunication:
    """Outbound message to record after a successful SMS or email send."""

    type: str
    to_address: str
    content: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    client_id: Optional[str] = None
    job_id: Optional[str] = None
    external_id: Optional[str] = None
    details: Optional[dict] = None


class CrmStore:
    """Read access to CRM entities, automation inserts and job status writes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _get(self, model, entity_id: Optional[str]):
        if not entity_id:
            return None
        async with self._session_factory() as session:
            return await session.get(model, entity_id)

    async def get_job(self, job_id: Optional[str]) -> Optional[Job]:
        return await self._get(Job, job_id)

    async def get_invoice(self, invoice_id: Optional[str]) -> Optional[Invoice]:
        return await self._get(Invoice, invoice_id)

    async def get_task(self, task_id: Optional[str]) -> Optional[Task]:
        return await self._get(Task, task_id)

    async def get_client(self, client_id: Optional[str]) -> Optional[Client]:
        return await self._get(Client, client_id)

    async def get_profile(self, profile_id: Optional[str]) -> Optional[Profile]:
        return await self._get(Profile, profile_id)

    async def insert_notification(
        self,
        user_id: Optional[str],
        title: str,
        message: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
    ) -> str:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type="automation",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        async with self._session_factory() as session:
            session.add(notification)
            await session.commit()
            return notification.id

    async def insert_task(self, new_task: NewTask) -> str:
        task = Task(
            organization_id=new_task.organization_id,
            user_id=new_task.user_id,
            job_id=new_task.job_id,
            client_id=new_task.client_id,
            title=new_task.title,
            description=new_task.description,
            assigned_to=new_task.assigned_to,
            priority=new_task.priority or "medium",
            due_date=new_task.due_date,
            created_by_automation=new_task.created_by_automation,
        )
        async with self._session_factory() as session:
            session.add(task)
            await session.commit()
            return task.id

    async def insert_communication(self, new_communication: NewCommunication) -> str:
        communication = CommunicationLog(
            organization_id=new_communication.organization_id,
            user_id=new_communication.user_id,
            client_id=new_communication.client_id,
            job_id=new_communication.job_id,
            type=new_communication.type,
            to_address=new_communication.to_address,
            content=new_communication.content,
            external_id=new_communication.external_id,
            details=new_communication.details,
        )
        async with self._session_factory() as session:
            session.add(communication)
            await session.commit()
            return communication.id

    async def update_job_status(self, job_id: str, status: str) -> bool:
        """Set a job's status. Returns False when the job does not exist."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job).where(Job.id == job_id).values(status=status)
            )
            await session.commit()
            return result.rowcount == 1
