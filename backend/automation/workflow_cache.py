"""Workflow cache and runnability validation."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from automation.steps import Step, normalize_steps, raw_steps_of
from automation.store import WorkflowDefinition
from core.constants import ValidationFailure, WorkflowStatus

logger = logging.getLogger(__name__)

VALIDATION_MESSAGES = {
    ValidationFailure.NOT_FOUND: "Workflow not found",
    ValidationFailure.INACTIVE: "Workflow is not active",
    ValidationFailure.NO_ACTIONS: "Workflow has no actions",
    ValidationFailure.NO_EXECUTABLE_ACTIONS: "Workflow has no executable actions",
}


@dataclass
class ValidationResult:
    """Outcome of :meth:`WorkflowCache.validate`."""

    is_valid: bool
    error: Optional[str] = None
    reason: Optional[ValidationFailure] = None
    workflow: Optional[WorkflowDefinition] = None
    steps: list[Step] = field(default_factory=list)

    @classmethod
    def invalid(
        cls, reason: ValidationFailure, workflow: Optional[WorkflowDefinition] = None
    ) -> "ValidationResult":
        return cls(
            is_valid=False,
            error=VALIDATION_MESSAGES[reason],
            reason=reason,
            workflow=workflow,
        )


class WorkflowCache:
    """TTL cache of workflow snapshots keyed by id.

    Absent workflows are never cached, so a workflow created after a miss
    is picked up on the next lookup.
    """

    def __init__(
        self,
        workflow_store,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.workflow_store = workflow_store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[WorkflowDefinition, float]] = {}

    @property
    def size(self) -> int:
        return len(self._entries)

    async def get_workflow(self, workflow_id: Optional[str]) -> Optional[WorkflowDefinition]:
        if not workflow_id:
            return None

        entry = self._entries.get(workflow_id)
        now = self._clock()
        if entry is not None and now - entry[1] < self.ttl_seconds:
            return entry[0]

        workflow = await self.workflow_store.get(workflow_id)
        if workflow is None:
            self._entries.pop(workflow_id, None)
            return None

        self._entries[workflow_id] = (workflow, now)
        return workflow

    async def validate(self, workflow_id: Optional[str]) -> ValidationResult:
        """Check that a workflow exists, is active and has executable steps."""
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return ValidationResult.invalid(ValidationFailure.NOT_FOUND)

        if not workflow.is_active or workflow.status != WorkflowStatus.ACTIVE.value:
            return ValidationResult.invalid(ValidationFailure.INACTIVE, workflow)

        raw_steps = raw_steps_of(workflow)
        if not raw_steps:
            return ValidationResult.invalid(ValidationFailure.NO_ACTIONS, workflow)

        steps = normalize_steps(raw_steps)
        if not steps:
            return ValidationResult.invalid(ValidationFailure.NO_EXECUTABLE_ACTIONS, workflow)

        return ValidationResult(is_valid=True, workflow=workflow, steps=steps)

    def invalidate(self, workflow_id: str) -> None:
        self._entries.pop(workflow_id, None)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"Workflow cache cleared ({count} entries)")
