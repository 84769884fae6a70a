"""Constants and enums for the automation engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Automation execution log status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # Parked on a durable delay until resume_at
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.SKIPPED.value,
    ExecutionStatus.EXPIRED.value,
})

ACTIVE_STATUSES = frozenset({
    ExecutionStatus.PENDING.value,
    ExecutionStatus.RUNNING.value,
    ExecutionStatus.WAITING.value,
})


class WorkflowStatus(str, Enum):
    """Workflow status as stored by the business-configuration side."""

    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"
    ARCHIVED = "archived"


class StepKind(str, Enum):
    """Executable step kinds after normalization."""

    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"
    NOTIFICATION = "notification"


class ActionType(str, Enum):
    """Concrete action performed by an ACTION step."""

    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    UPDATE_JOB_STATUS = "update_job_status"


class ConditionOperator(str, Enum):
    """Operators understood by condition steps."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    NOT_EMPTY = "not_empty"


class DelayUnit(str, Enum):
    """Units accepted by delay steps."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


DELAY_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
}


class ValidationFailure(str, Enum):
    """Reasons a workflow is not runnable."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NO_ACTIONS = "no_actions"
    NO_EXECUTABLE_ACTIONS = "no_executable_actions"


class EntityType(str, Enum):
    """Trigger entity types the variable resolver understands."""

    JOB = "job"
    INVOICE = "invoice"
    TASK = "task"
    CLIENT = "client"


DUPLICATE_SKIP_MESSAGE = "Duplicate automation detected and skipped"
PENDING_EXPIRED_MESSAGE = "Automation expired after remaining pending for over 1 hour"
